"""
Tests for logging configuration and delivery-scoped log context.
"""
import logging
from typing import Any, Dict, Iterator, List

import pytest
import structlog
from pydantic import BaseModel
from pythonjsonlogger import jsonlogger

from payment_broker.config import Settings
from payment_broker.messaging import (
    BrokerConnectionManager,
    Delivery,
    Envelope,
    InMemoryBroker,
    QueueConsumer,
    QueueSpec,
)
from payment_broker.monitoring import log_context, setup_logging
from payment_broker.monitoring.logging import app_context_processor

from conftest import Eventually


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Undo global structlog and root logger changes."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    root.handlers[:] = handlers
    root.setLevel(level)


class Job(BaseModel):
    n: int


class ContextCapturingConsumer(QueueConsumer[Job]):
    queue = QueueSpec("context_jobs")
    message_model = Job

    def __init__(self, manager: BrokerConnectionManager):
        super().__init__(manager)
        self.contexts: List[Dict[str, Any]] = []

    async def handle(self, message: Job, delivery: Delivery) -> None:
        self.contexts.append(structlog.contextvars.get_contextvars())


class TestSetupLogging:
    """Test suite for setup_logging."""

    @pytest.mark.unit
    def test_production_renders_json(self, restore_logging: None) -> None:
        setup_logging(Settings(app_env="production", log_level="WARNING"))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, jsonlogger.JsonFormatter)

    @pytest.mark.unit
    def test_development_renders_console(self, restore_logging: None) -> None:
        setup_logging(Settings(app_env="development"))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert not isinstance(logging.getLogger().handlers[0].formatter, jsonlogger.JsonFormatter)

    @pytest.mark.unit
    def test_app_context_uses_given_settings(self) -> None:
        add_app_context = app_context_processor(
            Settings(app_name="payments-eu", app_env="staging")
        )

        event = add_app_context(None, "info", {"event": "x"})

        assert event == {"event": "x", "app_name": "payments-eu", "app_env": "staging"}


class TestLogContext:
    """Test suite for log_context."""

    @pytest.mark.unit
    def test_binds_and_restores(self, restore_logging: None) -> None:
        structlog.contextvars.bind_contextvars(service="workers")

        with log_context(queue="payments", correlation_id=None):
            inside = structlog.contextvars.get_contextvars()

        assert inside == {"service": "workers", "queue": "payments"}
        assert structlog.contextvars.get_contextvars() == {"service": "workers"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_consumer_binds_delivery_fields(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        eventually: Eventually,
    ) -> None:
        consumer = ContextCapturingConsumer(manager)
        await consumer.start()

        await manager.publish(
            Envelope.from_payload({"n": 1}, correlation_id="corr-1"),
            queue=consumer.queue,
        )
        await eventually(lambda: bool(consumer.contexts))
        await consumer.stop()

        context = consumer.contexts[0]
        assert context["queue"] == "context_jobs"
        assert context["correlation_id"] == "corr-1"
        assert context["delivery_tag"] >= 1
        assert "queue" not in structlog.contextvars.get_contextvars()
