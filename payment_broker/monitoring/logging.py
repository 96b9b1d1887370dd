"""
Structured logging configuration.

Production renders JSON lines; development renders a readable console line.
Delivery-scoped fields (queue, delivery tag, correlation id) are bound through
``structlog.contextvars`` so every event logged while a message is handled
carries them.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger
from structlog.types import Processor

from payment_broker.config import Settings, get_settings


def app_context_processor(settings: Settings) -> Processor:
    """
    Build a processor that stamps the application name and environment.

    Args:
        settings: Settings the process was started with

    Returns:
        Processor: structlog processor
    """

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def _stdlib_formatter(settings: Settings) -> logging.Formatter:
    if not settings.is_production:
        return logging.Formatter("%(message)s")
    return jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and route standard library logging to stdout.

    Sets up:
    - Context variables merged into every event
    - JSONRenderer in production, ConsoleRenderer elsewhere
    - aio-pika/aiormq chatter limited to warnings
    """
    settings = settings or get_settings()

    renderer: Processor
    if settings.is_production:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context_processor(settings),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_stdlib_formatter(settings))
    root_logger.addHandler(handler)

    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        renderer=type(renderer).__name__,
    )


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind fields to every log event emitted inside the block.

    ``None`` values are skipped. Bindings are restored on exit, and each
    asyncio task works on its own copy of the context.

    Example:
        >>> with log_context(queue="payment_processing", correlation_id="c1"):
        ...     logger.info("message_received")
    """
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield
