"""Worker processes consuming the payment queues."""
from .runner import PaymentApplication, build_application, run_workers

__all__ = ["PaymentApplication", "build_application", "run_workers"]
