"""
Basic queue: fire-and-forget, at-most-once.

The ``payments`` queue is non-durable and messages are transient. The
consumer acks whether processing succeeds or not, so a failed payment is
never retried from here; the durable work queue is the reliable path.
"""
from typing import TYPE_CHECKING, Any, Mapping, Union

import structlog
from pydantic import BaseModel

from payment_broker.domain.models import PaymentMessage
from payment_broker.messaging import (
    BrokerConnectionManager,
    Delivery,
    Envelope,
    PoisonMessageError,
    QueueConsumer,
    QueueSpec,
)

if TYPE_CHECKING:
    from payment_broker.core.payment_service import PaymentService

logger = structlog.get_logger(__name__)

PAYMENTS_QUEUE = QueueSpec("payments")


class BasicQueue:
    """Publisher for the ``payments`` queue."""

    def __init__(self, manager: BrokerConnectionManager):
        self.manager = manager

    async def send(self, payment: Union[BaseModel, Mapping[str, Any]]) -> PaymentMessage:
        """
        Publish a payment snapshot.

        Raises:
            ValueError: If the payment has no id
            DeliveryError: If the broker did not take the message
        """
        if isinstance(payment, BaseModel):
            data = payment.model_dump(mode="json", by_alias=True)
        else:
            data = dict(payment)
        if not data.get("id"):
            raise ValueError("Invalid payment: missing id")

        message = PaymentMessage.model_validate(data)
        await self.manager.publish(Envelope.from_payload(message), queue=PAYMENTS_QUEUE)
        logger.info("payment_sent_to_basic_queue", payment_id=message.id)
        return message


class BasicPaymentConsumer(QueueConsumer[PaymentMessage]):
    """Looks up and processes each payment, then acks regardless of the outcome."""

    queue = PAYMENTS_QUEUE
    message_model = PaymentMessage
    prefetch = 0

    def __init__(self, manager: BrokerConnectionManager, service: "PaymentService"):
        super().__init__(manager)
        self.service = service

    async def handle(self, message: PaymentMessage, delivery: Delivery) -> None:
        self.log.info("basic_payment_received", payment_id=message.id)
        payment = await self.service.find_one(message.id)
        await self.service.process_payment(payment)

    async def on_failure(self, delivery: Delivery, error: Exception) -> None:
        # At-most-once: the message is consumed even though processing failed
        self.log.error(
            "basic_payment_failed",
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.ack(delivery)

    async def on_poison(self, delivery: Delivery, error: PoisonMessageError) -> None:
        self.log.error("basic_payment_dropped", error=str(error))
        await self.ack(delivery)
