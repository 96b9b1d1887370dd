"""
Dead-letter queue: the terminal parking lot for messages that exhausted
their retries or could not be parsed.

Entries are the original payload plus ``failedAt`` and ``failureReason``.
The queue carries a one hour TTL so unattended entries expire.
"""
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from payment_broker.config import Settings
from payment_broker.domain.models import utcnow
from payment_broker.messaging import (
    BrokerConnectionManager,
    Delivery,
    DeliveryMode,
    Envelope,
    PoisonMessageError,
    QueueConsumer,
    QueueSpec,
)
from payment_broker.monitoring import metrics

logger = structlog.get_logger(__name__)

DLQ_NAME = "payment_processing.dlq"


def dead_letter_queue_spec(settings: Settings) -> QueueSpec:
    """DLQ spec with the configured TTL."""
    return QueueSpec(DLQ_NAME, durable=True, message_ttl_ms=settings.dlq_message_ttl_ms)


def failed_at() -> str:
    """Current UTC time as ISO-8601 with millisecond precision."""
    return utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")


class DeadLetterEntry(BaseModel):
    """A parsed DLQ entry; the original payload fields are kept as extras."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    failure_reason: Optional[str] = None
    failed_at: Optional[str] = None


class DeadLetterQueue:
    """
    Publisher side of the DLQ.

    Example:
        >>> dlq = DeadLetterQueue(manager)
        >>> await dlq.deposit({"paymentId": "p1"}, reason="Max retries exceeded: boom")
    """

    def __init__(self, manager: BrokerConnectionManager):
        self.manager = manager
        self.spec = dead_letter_queue_spec(manager.settings)

    async def declare(self) -> None:
        await self.manager.declare_queue(self.spec)
        logger.info("dead_letter_queue_declared", queue=self.spec.name)

    async def deposit(
        self,
        message: Union[BaseModel, Mapping[str, Any]],
        reason: str,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Publish a failed message to the DLQ.

        Args:
            message: Original payload
            reason: Why the message was given up on
            source: Queue or component that gave up (for metrics and logs)

        Returns:
            Dict[str, Any]: The entry as published

        Raises:
            DeliveryError: If the entry could not be published
        """
        if isinstance(message, BaseModel):
            entry = message.model_dump(mode="json", by_alias=True, exclude_none=True)
        else:
            entry = dict(message)
        entry["failedAt"] = failed_at()
        entry["failureReason"] = reason

        await self.manager.publish(
            Envelope.from_payload(entry, delivery_mode=DeliveryMode.PERSISTENT),
            queue=self.spec,
        )

        source = source or "unknown"
        metrics.dead_letters_total.labels(source=source).inc()
        logger.warning("message_dead_lettered", source=source, reason=reason)
        return entry

    async def deposit_raw(
        self, envelope: Envelope, reason: str, source: Optional[str] = None
    ) -> Dict[str, Any]:
        """Dead-letter a delivered envelope, wrapping bodies that are not JSON objects."""
        try:
            message: Dict[str, Any] = envelope.decode()
        except PoisonMessageError:
            message = {"rawPayload": envelope.text()}
        return await self.deposit(message, reason=reason, source=source)


AlertHandler = Callable[[DeadLetterEntry], Awaitable[None]]


class DeadLetterConsumer(QueueConsumer[DeadLetterEntry]):
    """
    Drains the DLQ and raises an operator alert per entry.

    Every entry is acked, including unparseable ones, so the DLQ never
    feeds back into itself.
    """

    message_model = DeadLetterEntry
    prefetch = 0

    def __init__(self, manager: BrokerConnectionManager, alert: Optional[AlertHandler] = None):
        self.queue = dead_letter_queue_spec(manager.settings)
        super().__init__(manager)
        self.alert = alert
        self.alerts_raised = 0

    async def handle(self, message: DeadLetterEntry, delivery: Delivery) -> None:
        extras = message.model_extra or {}
        self.log.critical(
            "dead_letter_alert",
            reason=message.failure_reason,
            failed_at=message.failed_at,
            payment_id=extras.get("paymentId"),
        )
        self.alerts_raised += 1
        if self.alert is not None:
            await self.alert(message)

    async def on_failure(self, delivery: Delivery, error: Exception) -> None:
        self.log.error("dead_letter_processing_failed", error=str(error))
        await self.ack(delivery)

    async def on_poison(self, delivery: Delivery, error: PoisonMessageError) -> None:
        self.log.error("dead_letter_unparseable", error=str(error))
        await self.ack(delivery)
