"""
Topic routing over the ``payment_events`` exchange.

Routing keys are dot-separated words (``payment.credit.approve``). Binding
patterns use ``*`` for exactly one word and ``#`` for zero or more. The
wildcard consumers bind both ``payment.*`` and ``payment.*.*`` so they see
one- and two-word event families; a queue still gets a single copy of
each event.
"""
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union

import structlog
from pydantic import BaseModel

from payment_broker.domain.models import PaymentEvent
from payment_broker.messaging import (
    BrokerConnectionManager,
    Delivery,
    DeliveryMode,
    Envelope,
    ExchangeSpec,
    ExchangeType,
    PoisonMessageError,
    QueueConsumer,
    QueueSpec,
)

if TYPE_CHECKING:
    from payment_broker.core.audit import AuditLog
    from payment_broker.core.payment_service import PaymentService
    from payment_broker.integrations.notifier import EmailNotifier

    from .dead_letter import DeadLetterQueue

logger = structlog.get_logger(__name__)

PAYMENT_EVENTS_EXCHANGE = ExchangeSpec("payment_events", type=ExchangeType.TOPIC, durable=True)

APPROVED_PAYMENTS_QUEUE = QueueSpec("approved_payments", durable=True)
REFUND_REQUESTS_QUEUE = QueueSpec("refund_requests", durable=True)
EMAIL_NOTIFICATIONS_QUEUE = QueueSpec("email_notifications", durable=True)
AUDIT_LOGS_QUEUE = QueueSpec("audit_logs", durable=True)

ALL_PAYMENT_EVENTS = ("payment.*", "payment.*.*")

_RESERVED = (".", "*", "#")


class PaymentEventType(str, Enum):
    """Routing keys of payment events."""

    CREDIT_APPROVED = "payment.credit.approve"
    CREDIT_DECLINED = "payment.credit.decline"
    REFUND = "payment.refund"
    COMPLETED = "payment.complete"
    FRAUD_DETECTED = "payment.fraud.detect"

    @property
    def event_name(self) -> str:
        """Short name carried in the payload's ``type`` field."""
        return _EVENT_NAMES[self]


_EVENT_NAMES = {
    PaymentEventType.CREDIT_APPROVED: "approve",
    PaymentEventType.CREDIT_DECLINED: "decline",
    PaymentEventType.REFUND: "refund",
    PaymentEventType.COMPLETED: "complete",
    PaymentEventType.FRAUD_DETECTED: "fraud",
}


def build_routing_key(category: str, action: Optional[str] = None) -> str:
    """
    Build ``payment.<category>[.<action>]``.

    Raises:
        ValueError: If a segment is empty or contains ``.``, ``*`` or ``#``
    """
    segments = [category] if action is None else [category, action]
    for segment in segments:
        if not segment or any(ch in segment for ch in _RESERVED):
            raise ValueError(f"Invalid routing key segment: {segment!r}")
    return ".".join(["payment", *segments])


def validate_routing_key(key: str) -> str:
    """
    Check a raw ``payment.<category>[.<action>]`` key.

    Raises:
        ValueError: If the key is not a one- or two-word payment routing key
    """
    prefix, _, rest = key.partition(".")
    segments = rest.split(".") if rest else []
    if prefix != "payment" or not 1 <= len(segments) <= 2:
        raise ValueError(f"Invalid routing key: {key!r}")
    return build_routing_key(*segments)


class TopicRouter:
    """Publisher for the ``payment_events`` exchange."""

    def __init__(self, manager: BrokerConnectionManager):
        self.manager = manager

    async def declare(self) -> None:
        await self.manager.declare_exchange(PAYMENT_EVENTS_EXCHANGE)

    async def publish_event(
        self,
        event_type: Union[PaymentEventType, str],
        payload: Union[BaseModel, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """
        Publish a persistent event.

        ``type`` is filled from the event type when the payload lacks it.

        Returns:
            Dict[str, Any]: The published body

        Raises:
            ValueError: If a raw routing key is malformed
            DeliveryError: If the broker did not take the message
        """
        if isinstance(event_type, PaymentEventType):
            routing_key, name = event_type.value, event_type.event_name
        else:
            routing_key = validate_routing_key(event_type)
            name = routing_key.rsplit(".", 1)[-1]

        if isinstance(payload, BaseModel):
            body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        else:
            body = dict(payload)
        body.setdefault("type", name)

        await self.manager.publish(
            Envelope.from_payload(body, delivery_mode=DeliveryMode.PERSISTENT),
            exchange=PAYMENT_EVENTS_EXCHANGE,
            routing_key=routing_key,
        )
        logger.info(
            "payment_event_published",
            routing_key=routing_key,
            payment_id=body.get("paymentId"),
        )
        return body


class TopicConsumer(QueueConsumer[PaymentEvent]):
    """Consumer of a queue bound to ``payment_events``."""

    exchange = PAYMENT_EVENTS_EXCHANGE
    message_model = PaymentEvent


class ApprovedPaymentsConsumer(TopicConsumer):
    """Re-applies the stored status of approved payments."""

    queue = APPROVED_PAYMENTS_QUEUE
    binding_patterns = (PaymentEventType.CREDIT_APPROVED.value,)
    prefetch = 1

    def __init__(
        self,
        manager: BrokerConnectionManager,
        service: "PaymentService",
        dead_letters: Optional["DeadLetterQueue"] = None,
    ):
        super().__init__(manager, dead_letters=dead_letters)
        self.service = service

    async def handle(self, message: PaymentEvent, delivery: Delivery) -> None:
        self.log.info("approved_payment_received", payment_id=message.payment_id)
        payment = await self.service.find_one(message.payment_id)
        await self.service.update_status(message.payment_id, payment.status)


class RefundRequestsConsumer(TopicConsumer):
    """Executes refunds requested through ``payment.refund``."""

    queue = REFUND_REQUESTS_QUEUE
    binding_patterns = (PaymentEventType.REFUND.value,)
    prefetch = 1

    def __init__(
        self,
        manager: BrokerConnectionManager,
        service: "PaymentService",
        dead_letters: Optional["DeadLetterQueue"] = None,
    ):
        super().__init__(manager, dead_letters=dead_letters)
        self.service = service

    async def handle(self, message: PaymentEvent, delivery: Delivery) -> None:
        self.log.info("refund_request_received", payment_id=message.payment_id)
        await self.service.refund(message.payment_id, message.amount)
        self.log.info("refund_processed", payment_id=message.payment_id)


class EmailNotificationConsumer(TopicConsumer):
    """Sends an email for every payment event."""

    queue = EMAIL_NOTIFICATIONS_QUEUE
    binding_patterns = ALL_PAYMENT_EVENTS

    def __init__(
        self,
        manager: BrokerConnectionManager,
        notifier: "EmailNotifier",
        dead_letters: Optional["DeadLetterQueue"] = None,
    ):
        super().__init__(manager, dead_letters=dead_letters)
        self.notifier = notifier
        self.prefetch = manager.settings.notification_prefetch

    async def handle(self, message: PaymentEvent, delivery: Delivery) -> None:
        await self.notifier.send(message)


class AuditLogConsumer(TopicConsumer):
    """
    Appends every payment event to the audit log.

    Always acks: an audit entry that cannot be written is logged, never
    redelivered.
    """

    queue = AUDIT_LOGS_QUEUE
    binding_patterns = ALL_PAYMENT_EVENTS
    prefetch = 10

    def __init__(self, manager: BrokerConnectionManager, audit: "AuditLog"):
        super().__init__(manager)
        self.audit = audit

    async def handle(self, message: PaymentEvent, delivery: Delivery) -> None:
        await self.audit.record(message, routing_key=delivery.envelope.routing_key)

    async def on_failure(self, delivery: Delivery, error: Exception) -> None:
        self.log.error("audit_log_failed", error=str(error), error_type=type(error).__name__)
        await self.ack(delivery)

    async def on_poison(self, delivery: Delivery, error: PoisonMessageError) -> None:
        self.log.error("audit_log_unparseable", error=str(error))
        await self.ack(delivery)
