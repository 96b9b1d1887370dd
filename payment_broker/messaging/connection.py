"""
Broker connection manager.

Owns the single process-wide connection/channel pair. Every publish and
consume path asks for the channel through ``ensure_channel()``; a reconnect
replaces the channel, so references must not be cached across awaits.
"""
import asyncio
from enum import Enum
from typing import Optional, Union

import structlog

from payment_broker.config import Settings, get_settings
from payment_broker.monitoring import metrics

from .envelope import Binding, Envelope, ExchangeSpec, QueueSpec
from .exceptions import (
    ChannelNotReadyError,
    DeliveryError,
    is_channel_error,
)
from .transport import BrokerChannel, BrokerConnection, Connector, connector_from_url

logger = structlog.get_logger(__name__)


class LinkState(str, Enum):
    """Lifecycle of the shared broker link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


_STATE_GAUGE = {
    LinkState.DISCONNECTED: 0,
    LinkState.CONNECTING: 1,
    LinkState.OPEN: 2,
    LinkState.CLOSING: 3,
}


class BrokerConnectionManager:
    """
    Lifecycle-managed owner of the shared broker connection and channel.

    Handles:
    - Lazy, idempotent connection establishment
    - Clearing the cached link when the connection closes
    - One reconnect-and-retry for publishes that hit a channel error
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        connector: Optional[Connector] = None,
    ):
        """
        Initialize the manager.

        Args:
            settings: Optional settings (defaults to environment settings)
            connector: Optional connection factory; built from the broker URL otherwise

        Raises:
            ConfigurationError: If the broker URL is malformed
        """
        self.settings = settings or get_settings()
        self._connector = connector or connector_from_url(
            self.settings.connection_url, heartbeat=self.settings.rabbitmq_heartbeat
        )
        self._connection: Optional[BrokerConnection] = None
        self._channel: Optional[BrokerChannel] = None
        self._state = LinkState.DISCONNECTED
        self._last_error: Optional[BaseException] = None
        self._lock = asyncio.Lock()
        metrics.connection_state.set(_STATE_GAUGE[self._state])

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def is_ready(self) -> bool:
        """True when a live channel is available."""
        return self._link_is_live()

    def _set_state(self, state: LinkState) -> None:
        self._state = state
        metrics.connection_state.set(_STATE_GAUGE[state])

    def _link_is_live(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and self._channel.is_open
        )

    async def connect(self) -> None:
        """
        Establish the connection and channel.

        No-op when the link is already open. A stale channel/connection is
        closed first, ignoring errors from the close itself.

        Raises:
            TransportError: If the broker cannot be reached
        """
        async with self._lock:
            if self._link_is_live():
                return

            await self._discard_link()
            self._set_state(LinkState.CONNECTING)

            try:
                connection = await self._connector()
                channel = await connection.channel()
            except Exception as e:
                self._last_error = e
                self._set_state(LinkState.DISCONNECTED)
                logger.error("broker_connect_failed", error=str(e), error_type=type(e).__name__)
                raise

            connection.add_close_callback(
                lambda exc, conn=connection: self._on_connection_closed(conn, exc)
            )
            self._connection = connection
            self._channel = channel
            self._set_state(LinkState.OPEN)
            logger.info("broker_connected")

    async def _discard_link(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None

        if channel is not None:
            try:
                await channel.close()
            except Exception as e:
                # Channel might already be closed
                logger.debug("broker_stale_channel_close_failed", error=str(e))
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except Exception as e:
                logger.debug("broker_stale_connection_close_failed", error=str(e))

    def _on_connection_closed(
        self, connection: BrokerConnection, error: Optional[BaseException]
    ) -> None:
        if connection is not self._connection:
            return

        self._connection = None
        self._channel = None
        if self._state is LinkState.CLOSING:
            return

        self._last_error = error
        self._set_state(LinkState.DISCONNECTED)
        logger.warning(
            "broker_connection_closed",
            error=str(error) if error else None,
        )

    async def ensure_channel(self) -> BrokerChannel:
        """
        Return a live channel, connecting if necessary.

        Returns:
            BrokerChannel: Open channel
        """
        if not self._link_is_live():
            if self._state is not LinkState.CONNECTING:
                logger.warning("broker_channel_not_ready_reconnecting", state=self._state.value)
            await self.connect()
        return self._current_channel()

    def get_channel(self) -> BrokerChannel:
        """
        Return the current channel without connecting.

        Raises:
            ChannelNotReadyError: If no live channel exists yet
        """
        if not self._link_is_live():
            raise ChannelNotReadyError(
                "Broker channel is not initialized yet. "
                "Make sure the connection manager has finished connecting."
            )
        return self._current_channel()

    def _current_channel(self) -> BrokerChannel:
        channel = self._channel
        if channel is None:
            raise ChannelNotReadyError(f"Broker channel lost (state: {self._state.value})")
        return channel

    async def reconnect(self) -> None:
        """Drop the current link and connect again."""
        async with self._lock:
            await self._discard_link()
            self._set_state(LinkState.DISCONNECTED)
        metrics.reconnects_total.inc()
        await self.connect()

    async def declare_queue(self, spec: QueueSpec) -> None:
        channel = await self.ensure_channel()
        await channel.declare_queue(spec)

    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        channel = await self.ensure_channel()
        await channel.declare_exchange(spec)

    async def bind(self, binding: Binding) -> None:
        channel = await self.ensure_channel()
        await channel.bind_queue(binding)

    async def publish(
        self,
        envelope: Envelope,
        *,
        queue: Union[QueueSpec, str, None] = None,
        exchange: Optional[ExchangeSpec] = None,
        routing_key: str = "",
    ) -> None:
        """
        Publish an envelope to a queue or an exchange.

        The target is asserted with the caller's spec before publishing; a bare
        queue name (e.g. an RPC reply address) is published to as-is. A channel
        error triggers exactly one reconnect-and-retry.

        Args:
            envelope: Message to publish
            queue: Target queue spec or name (default exchange)
            exchange: Target exchange spec
            routing_key: Routing key for exchange publishes

        Raises:
            DeliveryError: If the message could not be handed to the broker
        """
        if (queue is None) == (exchange is None):
            raise ValueError("Exactly one of queue or exchange must be given")

        if exchange is not None:
            target, kind = exchange.name, "exchange"
        else:
            target = queue.name if isinstance(queue, QueueSpec) else queue
            routing_key, kind = target, "queue"

        for attempt in (1, 2):
            try:
                channel = await self.ensure_channel()
                if isinstance(queue, QueueSpec):
                    await channel.declare_queue(queue)
                elif exchange is not None:
                    await channel.declare_exchange(exchange)
                await channel.publish(exchange.name if exchange else "", routing_key, envelope)
            except Exception as e:
                if attempt == 1 and is_channel_error(e):
                    logger.info(
                        "broker_reconnecting",
                        target=target,
                        error=str(e),
                    )
                    try:
                        await self.reconnect()
                    except Exception as reconnect_error:
                        e = reconnect_error
                    else:
                        continue

                metrics.publish_failures_total.labels(target=target).inc()
                logger.error(
                    "broker_publish_failed",
                    target=target,
                    routing_key=routing_key,
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise DeliveryError(
                    f"Unable to publish to {kind} '{target}': {e}", original_error=e
                ) from e

            metrics.messages_published_total.labels(target=target, kind=kind).inc()
            logger.debug(
                "broker_message_published",
                target=target,
                routing_key=routing_key,
                retried=attempt > 1,
            )
            return

    async def close(self) -> None:
        """Close channel and connection."""
        async with self._lock:
            self._set_state(LinkState.CLOSING)
            channel, connection = self._channel, self._connection
            self._channel = None
            self._connection = None
            try:
                if channel is not None and channel.is_open:
                    await channel.close()
                if connection is not None and not connection.is_closed:
                    await connection.close()
            finally:
                self._set_state(LinkState.DISCONNECTED)
                logger.info("broker_disconnected")
