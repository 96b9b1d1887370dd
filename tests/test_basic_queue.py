"""
Tests for the basic (at-most-once) queue.
"""
from unittest.mock import AsyncMock

import pytest

from payment_broker.domain.errors import PaymentNotFoundError
from payment_broker.domain.models import Payment
from payment_broker.messaging import BrokerConnectionManager, Envelope, InMemoryBroker
from payment_broker.queues.basic import PAYMENTS_QUEUE, BasicPaymentConsumer, BasicQueue

from conftest import Eventually


class TestBasicQueue:
    """Test suite for the basic queue publisher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_publishes_transient_camel_case(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        sample_payment: Payment,
    ) -> None:
        message = await BasicQueue(manager).send(sample_payment)

        assert message.id == "p1"
        assert broker.queue_spec("payments").durable is False
        envelope = broker.peek("payments")[0]
        assert not envelope.persistent
        body = envelope.decode()
        assert body["id"] == "p1"
        assert body["userId"] == "u1"
        assert body["orderId"] == "o1"
        assert body["amount"] == 50

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_without_id_is_rejected(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        with pytest.raises(ValueError, match="missing id"):
            await BasicQueue(manager).send({"userId": "u1", "amount": 10})

        assert not broker.has_queue("payments")


class TestBasicPaymentConsumer:
    """Test suite for the basic queue consumer."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processes_and_acks(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        sample_payment: Payment,
        eventually: Eventually,
    ) -> None:
        service = AsyncMock()
        service.find_one.return_value = sample_payment
        consumer = BasicPaymentConsumer(manager, service)
        await consumer.start()

        await BasicQueue(manager).send(sample_payment)
        await eventually(lambda: broker.stats("payments").acked == 1)

        service.find_one.assert_awaited_once_with("p1")
        service.process_payment.assert_awaited_once_with(sample_payment)
        await consumer.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_is_acked_not_retried(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        sample_payment: Payment,
        eventually: Eventually,
    ) -> None:
        """Test a failed payment is consumed once and never redelivered."""
        service = AsyncMock()
        service.find_one.side_effect = PaymentNotFoundError("p1")
        consumer = BasicPaymentConsumer(manager, service)
        await consumer.start()

        await BasicQueue(manager).send(sample_payment)
        await eventually(lambda: broker.stats("payments").acked == 1)

        stats = broker.stats("payments")
        assert stats.requeued == 0
        assert stats.redelivered == 0
        assert broker.message_count("payments") == 0
        service.process_payment.assert_not_awaited()
        await consumer.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_message_is_dropped(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker, eventually: Eventually
    ) -> None:
        service = AsyncMock()
        consumer = BasicPaymentConsumer(manager, service)
        await consumer.start()

        await manager.publish(Envelope(body=b"{broken"), queue=PAYMENTS_QUEUE)
        await eventually(lambda: broker.stats("payments").acked == 1)

        assert broker.message_count("payments") == 0
        service.find_one.assert_not_awaited()
        await consumer.stop()
