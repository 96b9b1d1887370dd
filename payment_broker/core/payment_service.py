"""
Payment service.

Owns the payment lifecycle:
1. Create the record (pending) and enqueue it
2. Process through the gateway (processing -> completed or failed)
3. Announce completion on the topic exchange
4. Refund completed payments
"""
from typing import List, Optional

import structlog

from payment_broker.bus import PaymentBus
from payment_broker.domain.errors import (
    PaymentError,
    PaymentNotFoundError,
    RefundNotAllowedError,
)
from payment_broker.domain.models import (
    CreatePaymentRequest,
    Payment,
    PaymentEvent,
    PaymentStatus,
    utcnow,
)
from payment_broker.domain.store import PaymentStore
from payment_broker.integrations.payment_gateway import SimulatedPaymentGateway
from payment_broker.queues.topic import PaymentEventType

logger = structlog.get_logger(__name__)

RECENT_PAYMENTS_LIMIT = 100


class PaymentService:
    """
    Payment lifecycle orchestrator.

    Consumers call into this service; it calls out through the bus.
    """

    def __init__(
        self,
        store: PaymentStore,
        gateway: SimulatedPaymentGateway,
        bus: PaymentBus,
    ):
        self.store = store
        self.gateway = gateway
        self.bus = bus

    async def create(self, request: CreatePaymentRequest) -> Payment:
        """
        Save a pending payment and enqueue it for processing.

        Raises:
            DeliveryError: If the payment could not be enqueued
        """
        payment = Payment(**request.model_dump(), status=PaymentStatus.PENDING)
        await self.store.save(payment)
        logger.info("payment_created", payment_id=payment.id, user_id=payment.user_id)

        await self.bus.enqueue_payment(payment)
        return payment

    async def find_one(self, payment_id: str) -> Payment:
        """
        Fetch a payment.

        Raises:
            PaymentNotFoundError: If no such payment exists
        """
        payment = await self.store.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    async def find_all(self) -> List[Payment]:
        """Most recent payments first."""
        return await self.store.list_recent(RECENT_PAYMENTS_LIMIT)

    async def process_payment(self, payment: Payment) -> Payment:
        """
        Charge a payment and announce its completion.

        Raises:
            PaymentError: If the gateway declines; the record is marked failed
        """
        try:
            payment.status = PaymentStatus.PROCESSING
            await self.store.save(payment)

            intent = await self.gateway.create_payment_intent(
                payment.amount,
                payment.currency,
                {"userId": payment.user_id, "orderId": payment.order_id},
            )

            payment.status = PaymentStatus.COMPLETED
            payment.gateway_payment_id = intent["id"]
            payment.processed_at = utcnow()
            await self.store.save(payment)

            await self.bus.publish_event(
                PaymentEventType.COMPLETED,
                {
                    "paymentId": payment.id,
                    "type": "complete",
                    "amount": payment.amount,
                    "userId": payment.user_id,
                },
            )
        except Exception as e:
            logger.error(
                "payment_processing_failed",
                payment_id=payment.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = str(e)
            await self.store.save(payment)
            raise

        logger.info("payment_processed", payment_id=payment.id)
        return payment

    async def refund(self, payment_id: str, amount: Optional[float] = None) -> Payment:
        """
        Refund a completed payment, fully when ``amount`` is None.

        Raises:
            PaymentNotFoundError: If no such payment exists
            RefundNotAllowedError: If the payment is not completed
            PaymentError: If the gateway refund fails
        """
        payment = await self.find_one(payment_id)
        if payment.status is not PaymentStatus.COMPLETED:
            raise RefundNotAllowedError("Can only refund completed payments")

        try:
            refund = await self.gateway.create_refund(payment.gateway_payment_id, amount)
        except Exception as e:
            raise PaymentError(f"Failed to process refund: {e}") from e

        payment.status = PaymentStatus.REFUNDED
        await self.store.save(payment)
        logger.info("payment_refunded", payment_id=payment.id, refund_id=refund["id"])
        return payment

    async def request_refund(self, payment_id: str, amount: Optional[float] = None) -> None:
        """Ask the refund workers to refund a payment."""
        payment = await self.find_one(payment_id)
        await self.bus.publish_event(
            PaymentEventType.REFUND,
            PaymentEvent(payment_id=payment.id, amount=amount, user_id=payment.user_id),
        )

    async def approve(self, payment_id: str) -> None:
        """Announce a credit approval for a payment."""
        payment = await self.find_one(payment_id)
        await self.bus.publish_event(
            PaymentEventType.CREDIT_APPROVED,
            PaymentEvent(payment_id=payment.id, amount=payment.amount, user_id=payment.user_id),
        )

    async def update_status(self, payment_id: str, status: PaymentStatus) -> None:
        await self.store.update_status(payment_id, status)
