"""
Tests for the broker connection manager.
"""
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from payment_broker.config import Settings
from payment_broker.messaging import (
    BrokerConnectionManager,
    ChannelClosedError,
    ChannelNotReadyError,
    ConfigurationError,
    ConnectionLostError,
    DeclarationMismatchError,
    DeliveryError,
    Envelope,
    ExchangeSpec,
    InMemoryBroker,
    LinkState,
    QueueSpec,
    is_channel_error,
)
from payment_broker.messaging.transport import BrokerChannel, BrokerConnection, connector_from_url


def make_channel(publish_error: Any = None) -> AsyncMock:
    channel = AsyncMock(spec=BrokerChannel)
    channel.is_open = True
    if publish_error is not None:
        channel.publish.side_effect = publish_error
    return channel


def make_connection(channel: AsyncMock) -> MagicMock:
    connection = MagicMock(spec=BrokerConnection)
    connection.is_closed = False
    connection.channel = AsyncMock(return_value=channel)
    connection.close = AsyncMock()
    return connection


class TestConnect:
    """Test suite for connection establishment."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, test_settings: Settings) -> None:
        channel = make_channel()
        connector = AsyncMock(return_value=make_connection(channel))
        manager = BrokerConnectionManager(test_settings, connector=connector)

        await manager.connect()
        await manager.connect()

        assert connector.await_count == 1
        assert manager.state is LinkState.OPEN
        assert manager.get_channel() is channel

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ensure_channel_raises_when_link_is_lost_during_connect(
        self, test_settings: Settings
    ) -> None:
        manager = BrokerConnectionManager(test_settings, connector=AsyncMock())
        manager.connect = AsyncMock()  # type: ignore[method-assign]

        with pytest.raises(ChannelNotReadyError, match="Broker channel lost"):
            await manager.ensure_channel()

        manager.connect.assert_awaited_once()

    @pytest.mark.unit
    def test_get_channel_before_connect_raises(self, test_settings: Settings) -> None:
        manager = BrokerConnectionManager(test_settings, connector=AsyncMock())

        assert manager.is_ready is False
        with pytest.raises(ChannelNotReadyError):
            manager.get_channel()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connect_failure_leaves_link_disconnected(self, test_settings: Settings) -> None:
        connector = AsyncMock(side_effect=ConnectionLostError("Connection refused"))
        manager = BrokerConnectionManager(test_settings, connector=connector)

        with pytest.raises(ConnectionLostError):
            await manager.connect()

        assert manager.state is LinkState.DISCONNECTED
        assert isinstance(manager.last_error, ConnectionLostError)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_loss_clears_link(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        """Test the close handler drops the cached link so the next use reconnects."""
        assert manager.is_ready

        broker.drop_connections("Connection reset by peer")

        assert manager.state is LinkState.DISCONNECTED
        assert isinstance(manager.last_error, ConnectionLostError)
        assert manager.is_ready is False

        channel = await manager.ensure_channel()

        assert channel.is_open
        assert manager.state is LinkState.OPEN
        assert broker.open_connections == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close(self, manager: BrokerConnectionManager, broker: InMemoryBroker) -> None:
        await manager.close()

        assert manager.state is LinkState.DISCONNECTED
        assert manager.last_error is None
        assert broker.open_connections == 0

    @pytest.mark.unit
    def test_unsupported_url_raises_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="Unsupported"):
            connector_from_url("redis://localhost:6379")

    @pytest.mark.unit
    def test_url_without_host_raises_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="host"):
            connector_from_url("amqp://")


class TestPublish:
    """Test suite for publishing with one reconnect-and-retry."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_declares_queue_spec(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        spec = QueueSpec("jobs", durable=True)

        await manager.publish(Envelope.from_payload({"paymentId": "p1"}), queue=spec)

        assert broker.queue_spec("jobs") == spec
        assert broker.peek("jobs")[0].decode() == {"paymentId": "p1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_to_bare_name_does_not_declare(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        await manager.publish(Envelope.from_payload({}), queue="reply.somewhere")

        assert not broker.has_queue("reply.somewhere")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_to_exchange(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        exchange = ExchangeSpec("events")

        await manager.publish(
            Envelope.from_payload({"paymentId": "p1"}), exchange=exchange, routing_key="payment.refund"
        )

        assert broker.has_exchange("events")
        assert broker.journal[-1].routing_key == "payment.refund"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_requires_one_target(self, manager: BrokerConnectionManager) -> None:
        with pytest.raises(ValueError):
            await manager.publish(Envelope.from_payload({}))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reconnects_once_on_channel_error(self, test_settings: Settings) -> None:
        """Test a channel error triggers exactly one reconnect and a successful retry."""
        stale = make_channel(publish_error=ChannelClosedError("Channel closed"))
        fresh = make_channel()
        connector = AsyncMock(side_effect=[make_connection(stale), make_connection(fresh)])
        manager = BrokerConnectionManager(test_settings, connector=connector)
        envelope = Envelope.from_payload({"paymentId": "p1"})

        with capture_logs() as logs:
            await manager.publish(envelope, queue="jobs")

        assert connector.await_count == 2
        reconnecting = [log for log in logs if log["event"] == "broker_reconnecting"]
        assert [log["log_level"] for log in reconnecting] == ["info"]
        stale.publish.assert_awaited_once()
        fresh.publish.assert_awaited_once_with("", "jobs", envelope)
        stale.close.assert_awaited()
        assert manager.get_channel() is fresh

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_failure_raises_delivery_error(self, test_settings: Settings) -> None:
        """Test a failure after the reconnect surfaces as DeliveryError without further retries."""
        first = make_channel(publish_error=ChannelClosedError("Channel closed"))
        second = make_channel(publish_error=ChannelClosedError("Channel closed"))
        connector = AsyncMock(side_effect=[make_connection(first), make_connection(second)])
        manager = BrokerConnectionManager(test_settings, connector=connector)

        with pytest.raises(DeliveryError) as exc_info:
            await manager.publish(Envelope.from_payload({}), queue="jobs")

        assert isinstance(exc_info.value.original_error, ChannelClosedError)
        assert connector.await_count == 2
        second.publish.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reconnect_failure_raises_delivery_error(self, test_settings: Settings) -> None:
        stale = make_channel(publish_error=ChannelClosedError("Channel closed"))
        connector = AsyncMock(
            side_effect=[make_connection(stale), ConnectionLostError("Connection refused")]
        )
        manager = BrokerConnectionManager(test_settings, connector=connector)

        with pytest.raises(DeliveryError) as exc_info:
            await manager.publish(Envelope.from_payload({}), queue="jobs")

        assert isinstance(exc_info.value.original_error, ConnectionLostError)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_transport_error_is_not_retried(self, test_settings: Settings) -> None:
        channel = make_channel()
        channel.declare_queue.side_effect = DeclarationMismatchError("PRECONDITION_FAILED")
        connector = AsyncMock(return_value=make_connection(channel))
        manager = BrokerConnectionManager(test_settings, connector=connector)

        with pytest.raises(DeliveryError) as exc_info:
            await manager.publish(Envelope.from_payload({}), queue=QueueSpec("jobs"))

        assert isinstance(exc_info.value.original_error, DeclarationMismatchError)
        assert connector.await_count == 1
        channel.publish.assert_not_awaited()


class TestIsChannelError:
    """Test suite for channel error classification."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (ChannelClosedError("x"), True),
            (ConnectionLostError("x"), True),
            (ConnectionResetError(), True),
            (RuntimeError("Channel closed by server"), True),
            (DeclarationMismatchError("channel closed"), False),
            (ValueError("bad payload"), False),
        ],
    )
    def test_classification(self, error: Exception, expected: bool) -> None:
        assert is_channel_error(error) is expected
