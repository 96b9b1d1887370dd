"""
Tests for the dead-letter queue.
"""
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from payment_broker.config import Settings
from payment_broker.messaging import BrokerConnectionManager, Envelope, InMemoryBroker
from payment_broker.queues.dead_letter import (
    DLQ_NAME,
    DeadLetterConsumer,
    DeadLetterEntry,
    DeadLetterQueue,
    failed_at,
)
from payment_broker.queues.rpc import ProcessPaymentWithRetryRequest

from conftest import Eventually


class TestDeadLetterQueue:
    """Test suite for DLQ deposits."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deposit_adds_failure_metadata(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        entry = await DeadLetterQueue(manager).deposit(
            {"method": "processPaymentWithRetry", "paymentId": "p1"},
            reason="Max retries exceeded: card declined",
            source="payment_rpc",
        )

        assert entry["paymentId"] == "p1"
        assert entry["failureReason"] == "Max retries exceeded: card declined"
        envelope = broker.peek(DLQ_NAME)[0]
        assert envelope.persistent
        assert envelope.decode() == entry

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deposit_model_uses_wire_names(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        await DeadLetterQueue(manager).deposit(
            ProcessPaymentWithRetryRequest(payment_id="p1"), reason="boom"
        )

        body = broker.peek(DLQ_NAME)[0].decode()
        assert body["method"] == "processPaymentWithRetry"
        assert body["paymentId"] == "p1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_queue_is_durable_with_ttl(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker, test_settings: Settings
    ) -> None:
        await DeadLetterQueue(manager).declare()

        spec = broker.queue_spec(DLQ_NAME)
        assert spec.durable is True
        assert spec.message_ttl_ms == test_settings.dlq_message_ttl_ms
        assert spec.arguments == {"x-message-ttl": test_settings.dlq_message_ttl_ms}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deposit_raw_wraps_non_json(
        self, manager: BrokerConnectionManager
    ) -> None:
        entry = await DeadLetterQueue(manager).deposit_raw(
            Envelope(body=b"\xffnot json"), reason="Malformed payload"
        )

        assert entry["rawPayload"].endswith("not json")
        assert "paymentId" not in entry

    @pytest.mark.unit
    def test_failed_at_is_utc_iso_with_millis(self) -> None:
        stamp = failed_at()

        assert stamp.endswith("Z")
        parsed = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
        assert parsed.utcoffset().total_seconds() == 0
        assert len(stamp.split(".")[1]) == 4  # three digits plus "Z"


class TestDeadLetterConsumer:
    """Test suite for the DLQ alerting consumer."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_alert_raised_per_entry(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker, eventually: Eventually
    ) -> None:
        alert = AsyncMock()
        consumer = DeadLetterConsumer(manager, alert=alert)
        await consumer.start()

        await DeadLetterQueue(manager).deposit({"paymentId": "p1"}, reason="boom")
        await eventually(lambda: broker.stats(DLQ_NAME).acked == 1)
        await consumer.stop()

        assert consumer.alerts_raised == 1
        entry: DeadLetterEntry = alert.await_args.args[0]
        assert entry.failure_reason == "boom"
        assert entry.model_extra == {"paymentId": "p1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_entry_is_acked_once(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker, eventually: Eventually
    ) -> None:
        """Test a broken DLQ entry is consumed and never fed back into the DLQ."""
        consumer = DeadLetterConsumer(manager)
        await consumer.start()

        await manager.publish(Envelope(body=b"garbage"), queue=consumer.queue)
        await eventually(lambda: broker.stats(DLQ_NAME).acked == 1)
        await consumer.stop()

        stats = broker.stats(DLQ_NAME)
        assert stats.published == 1
        assert stats.requeued == 0
        assert broker.message_count(DLQ_NAME) == 0
        assert consumer.alerts_raised == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_alert_failure_is_acked(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker, eventually: Eventually
    ) -> None:
        consumer = DeadLetterConsumer(manager, alert=AsyncMock(side_effect=RuntimeError("pager down")))
        await consumer.start()

        await DeadLetterQueue(manager).deposit({"paymentId": "p1"}, reason="boom")
        await eventually(lambda: broker.stats(DLQ_NAME).acked == 1)
        await consumer.stop()

        assert broker.stats(DLQ_NAME).requeued == 0
