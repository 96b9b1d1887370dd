"""
Transport abstraction over an AMQP-style broker.

Two implementations exist: ``amqp`` (aio-pika against RabbitMQ) and
``memory`` (an in-process broker for development and tests). Everything above
this module talks to these interfaces only.
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlsplit

from .envelope import Binding, Envelope, ExchangeSpec, QueueSpec
from .exceptions import ConfigurationError

CloseCallback = Callable[[Optional[BaseException]], None]


class Delivery(ABC):
    """A message handed to a consumer, awaiting settlement."""

    envelope: Envelope
    queue: str
    delivery_tag: int
    redelivered: bool

    @property
    @abstractmethod
    def settled(self) -> bool:
        """True once the delivery was acked, nacked or rejected."""

    @abstractmethod
    async def ack(self) -> None:
        """Acknowledge the delivery; the broker forgets the message."""

    @abstractmethod
    async def nack(self, requeue: bool = True) -> None:
        """Negatively acknowledge; optionally return the message to the queue."""

    @abstractmethod
    async def reject(self, requeue: bool = False) -> None:
        """Reject the delivery."""


class ConsumerStream(ABC):
    """Async iterator of deliveries for one queue subscription."""

    def __aiter__(self) -> AsyncIterator[Delivery]:
        return self

    @abstractmethod
    async def __anext__(self) -> Delivery:
        """Wait for the next delivery."""

    @abstractmethod
    async def cancel(self) -> None:
        """Stop the subscription; unacked deliveries return to the queue."""


class BrokerChannel(ABC):
    """A channel multiplexed over a broker connection."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the channel can be used."""

    @abstractmethod
    async def declare_queue(self, spec: QueueSpec) -> None:
        """Declare a queue; identical redeclaration is a no-op."""

    @abstractmethod
    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        """Declare an exchange; identical redeclaration is a no-op."""

    @abstractmethod
    async def bind_queue(self, binding: Binding) -> None:
        """Bind a queue to an exchange with a routing pattern."""

    @abstractmethod
    async def publish(self, exchange: str, routing_key: str, envelope: Envelope) -> None:
        """Publish to an exchange; the empty name is the default (direct-to-queue) exchange."""

    @abstractmethod
    async def consume(
        self, queue: str, prefetch: int = 0, no_ack: bool = False
    ) -> ConsumerStream:
        """Subscribe to a queue with an in-flight bound of ``prefetch`` (0 = unbounded)."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel."""


class BrokerConnection(ABC):
    """A connection to the broker."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """True once the connection is closed."""

    @abstractmethod
    async def channel(self) -> BrokerChannel:
        """Open a new channel."""

    @abstractmethod
    def add_close_callback(self, callback: CloseCallback) -> None:
        """Register a callback invoked with the close reason when the connection closes."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""


Connector = Callable[[], Awaitable[BrokerConnection]]


def connector_from_url(url: str, heartbeat: int = 60) -> Connector:
    """
    Build a connector for a broker URL.

    Args:
        url: ``amqp://``, ``amqps://`` or ``memory://<name>``
        heartbeat: AMQP heartbeat in seconds

    Returns:
        Connector: Coroutine factory opening a new connection

    Raises:
        ConfigurationError: If the URL cannot be used
    """
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise ConfigurationError(f"Malformed broker URL: {e}") from e

    if not parts.hostname:
        raise ConfigurationError("Broker URL must include a host")

    if parts.scheme in ("amqp", "amqps"):
        from .amqp import AmqpConnection

        async def connect_amqp() -> BrokerConnection:
            return await AmqpConnection.open(url, heartbeat=heartbeat)

        return connect_amqp

    if parts.scheme == "memory":
        from .memory import InMemoryBroker

        broker = InMemoryBroker.named(parts.hostname)
        return broker.connect

    raise ConfigurationError(f"Unsupported broker URL scheme '{parts.scheme}'")
