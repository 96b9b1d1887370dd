"""
Messaging facade used by application code.

Bundles the publishers of every pattern behind one object so services do
not need to know which queue or exchange a message travels through.
"""
from typing import Any, Dict, Mapping, Optional, Union

import structlog
from pydantic import BaseModel

from payment_broker.config import Settings
from payment_broker.domain.models import FraudCheckRequest, Payment, WorkItem
from payment_broker.messaging import BrokerConnectionManager
from payment_broker.queues.basic import BasicQueue
from payment_broker.queues.dead_letter import DeadLetterQueue
from payment_broker.queues.rpc import RPC_QUEUE, RpcClient
from payment_broker.queues.topic import PAYMENT_EVENTS_EXCHANGE, PaymentEventType, TopicRouter
from payment_broker.queues.work_queue import (
    FRAUD_CHECK_QUEUE,
    PAYMENT_PROCESSING_QUEUE,
    WorkQueue,
)

logger = structlog.get_logger(__name__)


class PaymentBus:
    """
    Publishes payment traffic across the messaging patterns.

    Example:
        >>> bus = PaymentBus(manager)
        >>> await bus.enqueue_payment(payment)
        >>> await bus.publish_event(PaymentEventType.REFUND, {"paymentId": payment.id})
    """

    def __init__(self, manager: BrokerConnectionManager, settings: Optional[Settings] = None):
        self.manager = manager
        self.settings = settings or manager.settings
        self.basic = BasicQueue(manager)
        self.work = WorkQueue(manager)
        self.topics = TopicRouter(manager)
        self.dead_letters = DeadLetterQueue(manager)
        self.rpc = RpcClient(manager, self.settings)

    async def declare_topology(self) -> None:
        """Declare the exchange and the queues publishers write to."""
        await self.manager.declare_exchange(PAYMENT_EVENTS_EXCHANGE)
        await self.manager.declare_queue(PAYMENT_PROCESSING_QUEUE)
        await self.manager.declare_queue(FRAUD_CHECK_QUEUE)
        await self.manager.declare_queue(RPC_QUEUE)
        await self.dead_letters.declare()

    async def enqueue_payment(self, payment: Payment) -> None:
        """
        Hand a new payment to the workers.

        Sends a snapshot to the basic queue and a work item to the durable
        queue, plus a fraud check when enabled.

        Raises:
            DeliveryError: If any publish fails
        """
        await self.basic.send(payment)
        await self.work.send(
            PAYMENT_PROCESSING_QUEUE,
            WorkItem(
                payment_id=payment.id,
                user_id=payment.user_id,
                order_id=payment.order_id,
                amount=payment.amount,
                currency=payment.currency,
            ),
        )
        if self.settings.fraud_check_enabled:
            await self.request_fraud_check(payment)
        logger.info("payment_enqueued", payment_id=payment.id)

    async def request_fraud_check(self, payment: Payment) -> None:
        await self.work.send(
            FRAUD_CHECK_QUEUE,
            FraudCheckRequest(
                payment_id=payment.id,
                amount=payment.amount,
                user_id=payment.user_id,
            ),
        )

    async def publish_event(
        self,
        event_type: Union[PaymentEventType, str],
        payload: Union[BaseModel, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        return await self.topics.publish_event(event_type, payload)

    async def rpc_call(self, method: str, timeout: Optional[float] = None, **args: Any) -> Dict[str, Any]:
        return await self.rpc.call(method, timeout=timeout, **args)

    async def dead_letter(
        self,
        message: Union[BaseModel, Mapping[str, Any]],
        reason: str,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.dead_letters.deposit(message, reason=reason, source=source)
