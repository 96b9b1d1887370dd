"""Monitoring and observability package."""
from .logging import log_context, setup_logging

__all__ = ["setup_logging", "log_context"]
