"""
Durable work queues: at-least-once with fair dispatch.

Queues survive broker restarts, messages are persistent, and each worker
holds at most one unacked message (prefetch 1). A failed message is nacked
with requeue and redelivered until it succeeds.
"""
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

import structlog
from pydantic import BaseModel

from payment_broker.domain.models import FraudCheckRequest, PaymentEvent, WorkItem
from payment_broker.integrations.payment_gateway import SimulatedPaymentGateway
from payment_broker.messaging import (
    BrokerConnectionManager,
    Delivery,
    DeliveryMode,
    Envelope,
    QueueConsumer,
    QueueSpec,
)

from .topic import PaymentEventType, TopicRouter

if TYPE_CHECKING:
    from payment_broker.core.payment_service import PaymentService

    from .dead_letter import DeadLetterQueue

logger = structlog.get_logger(__name__)

PAYMENT_PROCESSING_QUEUE = QueueSpec("payment_processing", durable=True)
FRAUD_CHECK_QUEUE = QueueSpec("fraud_check", durable=True)


class WorkQueue:
    """Publisher for durable work queues."""

    def __init__(self, manager: BrokerConnectionManager):
        self.manager = manager

    async def send(
        self, spec: QueueSpec, item: Union[BaseModel, Mapping[str, Any]]
    ) -> None:
        """
        Publish a persistent work item.

        Raises:
            DeliveryError: If the broker did not take the message
        """
        await self.manager.publish(
            Envelope.from_payload(item, delivery_mode=DeliveryMode.PERSISTENT),
            queue=spec,
        )
        logger.info("work_item_enqueued", queue=spec.name)


class PaymentProcessingConsumer(QueueConsumer[WorkItem]):
    """Processes payments from ``payment_processing``."""

    queue = PAYMENT_PROCESSING_QUEUE
    message_model = WorkItem
    prefetch = 1

    def __init__(
        self,
        manager: BrokerConnectionManager,
        service: "PaymentService",
        dead_letters: Optional["DeadLetterQueue"] = None,
    ):
        super().__init__(manager, dead_letters=dead_letters)
        self.service = service

    async def handle(self, message: WorkItem, delivery: Delivery) -> None:
        self.log.info(
            "work_item_received",
            payment_id=message.payment_id,
            redelivered=delivery.redelivered,
        )
        payment = await self.service.find_one(message.payment_id)
        await self.service.process_payment(payment)
        self.log.info("work_item_completed", payment_id=message.payment_id)


class FraudCheckConsumer(QueueConsumer[FraudCheckRequest]):
    """Scores payments from ``fraud_check`` and announces high-risk ones."""

    queue = FRAUD_CHECK_QUEUE
    message_model = FraudCheckRequest
    prefetch = 1

    def __init__(
        self,
        manager: BrokerConnectionManager,
        gateway: SimulatedPaymentGateway,
        router: TopicRouter,
        dead_letters: Optional["DeadLetterQueue"] = None,
    ):
        super().__init__(manager, dead_letters=dead_letters)
        self.gateway = gateway
        self.router = router

    async def handle(self, message: FraudCheckRequest, delivery: Delivery) -> None:
        assessment = await self.gateway.check_fraud(message.amount, message.user_id)
        self.log.info(
            "fraud_check_completed",
            payment_id=message.payment_id,
            risk=assessment.risk.value,
            score=assessment.score,
        )
        if not assessment.is_high_risk:
            return

        self.log.warning(
            "high_risk_payment_detected",
            payment_id=message.payment_id,
            score=assessment.score,
        )
        await self.router.publish_event(
            PaymentEventType.FRAUD_DETECTED,
            PaymentEvent(
                payment_id=message.payment_id,
                type="fraud",
                amount=message.amount,
                user_id=message.user_id,
                risk_score=assessment.score,
            ),
        )
