"""
In-process AMQP-style broker for development and tests.

Models the parts of RabbitMQ the payment workers rely on:

- queue/exchange declaration with equivalence checks
- default, direct, fanout and topic routing
- per-consumer prefetch with round-robin dispatch
- ack, nack/reject with requeue to the head of the queue
- requeue of unacknowledged deliveries when a consumer or channel goes away
- per-queue message TTL, exclusive and auto-delete queues

State lives on the broker, not on connections, so it survives reconnects.
"""
import asyncio
import dataclasses
import itertools
import time
from collections import deque
from dataclasses import dataclass
from typing import ClassVar, Deque, Dict, List, Optional, Tuple

import structlog

from .envelope import Binding, Envelope, ExchangeSpec, ExchangeType, QueueSpec
from .exceptions import (
    ChannelClosedError,
    ConnectionLostError,
    DeclarationMismatchError,
    DeliveryStateError,
    EntityNotFoundError,
)
from .routing import topic_matches
from .transport import (
    BrokerChannel,
    BrokerConnection,
    CloseCallback,
    ConsumerStream,
    Delivery,
)

logger = structlog.get_logger(__name__)

_STOP = object()


@dataclass
class QueueStats:
    """Counters kept per queue."""

    published: int = 0
    delivered: int = 0
    acked: int = 0
    requeued: int = 0
    rejected: int = 0
    redelivered: int = 0
    expired: int = 0


@dataclass(frozen=True)
class PublishedMessage:
    """Journal entry for one publish."""

    exchange: str
    routing_key: str
    envelope: Envelope
    queues: Tuple[str, ...]


@dataclass
class _StoredMessage:
    envelope: Envelope
    enqueued_at: float
    redelivered: bool = False


class _MemoryQueue:
    def __init__(self, spec: QueueSpec, owner: Optional["InMemoryConnection"]):
        self.spec = spec
        self.owner = owner
        self.ready: Deque[_StoredMessage] = deque()
        self.consumers: List["InMemoryConsumer"] = []
        self.unacked: Dict[int, Tuple[_StoredMessage, "InMemoryConsumer"]] = {}
        self.stats = QueueStats()
        self.next_consumer = 0


class InMemoryDelivery(Delivery):
    """Delivery handed out by the in-process broker."""

    def __init__(
        self,
        consumer: "InMemoryConsumer",
        delivery_tag: int,
        message: _StoredMessage,
    ):
        self._consumer = consumer
        self.envelope = message.envelope
        self.queue = consumer.queue_name
        self.delivery_tag = delivery_tag
        self.redelivered = message.redelivered
        self._settled = consumer.no_ack

    @property
    def settled(self) -> bool:
        return self._settled

    async def ack(self) -> None:
        self._settle(ack=True, requeue=False)

    async def nack(self, requeue: bool = True) -> None:
        self._settle(ack=False, requeue=requeue)

    async def reject(self, requeue: bool = False) -> None:
        self._settle(ack=False, requeue=requeue)

    def _settle(self, ack: bool, requeue: bool) -> None:
        if self._settled:
            raise DeliveryStateError(
                f"Delivery {self.delivery_tag} on '{self.queue}' is already settled"
            )
        if not self._consumer.channel.is_open:
            raise ChannelClosedError(
                f"Channel closed before delivery {self.delivery_tag} was settled"
            )
        self._consumer.broker._settle(self.queue, self.delivery_tag, ack=ack, requeue=requeue)
        self._settled = True


class InMemoryConsumer(ConsumerStream):
    """Subscription to one queue; deliveries are buffered in an asyncio queue."""

    def __init__(
        self,
        broker: "InMemoryBroker",
        channel: "InMemoryChannel",
        queue_name: str,
        prefetch: int,
        no_ack: bool,
    ):
        self.broker = broker
        self.channel = channel
        self.queue_name = queue_name
        self.prefetch = prefetch
        self.no_ack = no_ack
        self.in_flight = 0
        self.active = True
        self._inbox: "asyncio.Queue[object]" = asyncio.Queue()

    @property
    def has_capacity(self) -> bool:
        if not self.active:
            return False
        return self.no_ack or self.prefetch <= 0 or self.in_flight < self.prefetch

    def push(self, delivery: InMemoryDelivery) -> None:
        self._inbox.put_nowait(delivery)

    async def __anext__(self) -> Delivery:
        item = await self._inbox.get()
        if item is _STOP:
            self._inbox.put_nowait(_STOP)
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._inbox.put_nowait(_STOP)
            raise item
        return item  # type: ignore[return-value]

    async def cancel(self) -> None:
        self._terminate(None)

    def _terminate(self, error: Optional[BaseException]) -> None:
        if not self.active:
            return
        self.active = False
        # Deliveries the application never saw go back to the queue
        pending: List[InMemoryDelivery] = []
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, InMemoryDelivery):
                pending.append(item)
        self.broker._remove_consumer(self, [d.delivery_tag for d in pending if not self.no_ack])
        self._inbox.put_nowait(error if error is not None else _STOP)


class InMemoryChannel(BrokerChannel):
    """Channel on an in-process connection."""

    def __init__(self, connection: "InMemoryConnection"):
        self._connection = connection
        self._broker = connection.broker
        self._open = True
        self._consumers: List[InMemoryConsumer] = []

    @property
    def is_open(self) -> bool:
        return self._open and not self._connection.is_closed

    def _check_open(self) -> None:
        if not self.is_open:
            raise ChannelClosedError("Channel closed")

    async def declare_queue(self, spec: QueueSpec) -> None:
        self._check_open()
        try:
            self._broker._declare_queue(spec, self._connection)
        except DeclarationMismatchError as e:
            # PRECONDITION_FAILED closes the channel, as on a real broker
            self._shutdown(ChannelClosedError(str(e)))
            raise

    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        self._check_open()
        try:
            self._broker._declare_exchange(spec)
        except DeclarationMismatchError as e:
            self._shutdown(ChannelClosedError(str(e)))
            raise

    async def bind_queue(self, binding: Binding) -> None:
        self._check_open()
        try:
            self._broker._bind(binding)
        except EntityNotFoundError as e:
            self._shutdown(ChannelClosedError(str(e)))
            raise

    async def publish(self, exchange: str, routing_key: str, envelope: Envelope) -> None:
        self._check_open()
        try:
            self._broker._publish(exchange, routing_key, envelope)
        except EntityNotFoundError as e:
            self._shutdown(ChannelClosedError(str(e)))
            raise

    async def consume(
        self, queue: str, prefetch: int = 0, no_ack: bool = False
    ) -> ConsumerStream:
        self._check_open()
        consumer = InMemoryConsumer(self._broker, self, queue, prefetch, no_ack)
        self._broker._add_consumer(consumer)
        self._consumers.append(consumer)
        return consumer

    async def close(self) -> None:
        self._shutdown(None)

    def _shutdown(self, error: Optional[BaseException]) -> None:
        if not self._open:
            return
        for consumer in list(self._consumers):
            consumer._terminate(error)
        self._consumers.clear()
        self._broker._requeue_channel(self)
        self._open = False


class InMemoryConnection(BrokerConnection):
    """Connection to an :class:`InMemoryBroker`."""

    def __init__(self, broker: "InMemoryBroker"):
        self.broker = broker
        self._closed = False
        self._callbacks: List[CloseCallback] = []
        self._channels: List[InMemoryChannel] = []

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def channel(self) -> BrokerChannel:
        if self._closed:
            raise ConnectionLostError("Connection closed")
        channel = InMemoryChannel(self)
        self._channels.append(channel)
        return channel

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._callbacks.append(callback)

    async def close(self) -> None:
        self._terminate(None)

    def _terminate(self, error: Optional[BaseException]) -> None:
        if self._closed:
            return
        channel_error = ChannelClosedError(str(error)) if error is not None else None
        for channel in self._channels:
            channel._shutdown(channel_error)
        self._closed = True
        self.broker._connection_closed(self)
        for callback in list(self._callbacks):
            callback(error)


class InMemoryBroker:
    """
    In-process broker shared by every connection opened against it.

    Example:
        >>> broker = InMemoryBroker()
        >>> connection = await broker.connect()
        >>> channel = await connection.channel()
        >>> await channel.declare_queue(QueueSpec("jobs", durable=True))
    """

    _registry: ClassVar[Dict[str, "InMemoryBroker"]] = {}

    def __init__(self, name: str = "default"):
        self.name = name
        self._queues: Dict[str, _MemoryQueue] = {}
        self._exchanges: Dict[str, ExchangeSpec] = {}
        self._bindings: List[Binding] = []
        self._connections: List[InMemoryConnection] = []
        self._tags = itertools.count(1)
        self.journal: List[PublishedMessage] = []

    @classmethod
    def named(cls, name: str) -> "InMemoryBroker":
        """Get or create the process-wide broker registered under ``name``."""
        if name not in cls._registry:
            cls._registry[name] = cls(name)
        return cls._registry[name]

    @classmethod
    def reset_registry(cls) -> None:
        cls._registry.clear()

    async def connect(self) -> InMemoryConnection:
        """Open a new connection."""
        connection = InMemoryConnection(self)
        self._connections.append(connection)
        return connection

    def drop_connections(self, reason: str = "Connection reset by broker") -> int:
        """
        Close every open connection as if the broker went away.

        Returns:
            int: Number of connections dropped
        """
        connections = list(self._connections)
        for connection in connections:
            connection._terminate(ConnectionLostError(reason))
        logger.info("memory_broker_connections_dropped", broker=self.name, count=len(connections))
        return len(connections)

    # Inspection

    @property
    def open_connections(self) -> int:
        return len(self._connections)

    def queue_names(self) -> List[str]:
        return list(self._queues)

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def has_exchange(self, name: str) -> bool:
        return name in self._exchanges

    def queue_spec(self, name: str) -> QueueSpec:
        return self._get_queue(name).spec

    def message_count(self, name: str) -> int:
        """Messages ready for delivery (not counting unacknowledged ones)."""
        queue = self._get_queue(name)
        self._expire(queue)
        return len(queue.ready)

    def unacked_count(self, name: str) -> int:
        return len(self._get_queue(name).unacked)

    def consumer_count(self, name: str) -> int:
        return len(self._get_queue(name).consumers)

    def stats(self, name: str) -> QueueStats:
        return self._get_queue(name).stats

    def peek(self, name: str) -> List[Envelope]:
        """Envelopes waiting in a queue, head first."""
        queue = self._get_queue(name)
        self._expire(queue)
        return [message.envelope for message in queue.ready]

    def bindings(self, exchange: Optional[str] = None) -> List[Binding]:
        return [b for b in self._bindings if exchange is None or b.exchange == exchange]

    def routed_to(self, routing_key: str, exchange: str) -> List[str]:
        """Queues a message with ``routing_key`` would reach through ``exchange``."""
        return list(self._route(exchange, routing_key))

    # Channel operations

    def _get_queue(self, name: str) -> _MemoryQueue:
        try:
            return self._queues[name]
        except KeyError:
            raise EntityNotFoundError(f"NOT_FOUND - no queue '{name}'") from None

    def _declare_queue(self, spec: QueueSpec, connection: InMemoryConnection) -> None:
        existing = self._queues.get(spec.name)
        if existing is None:
            self._queues[spec.name] = _MemoryQueue(spec, connection if spec.exclusive else None)
            logger.debug("memory_queue_declared", queue=spec.name, durable=spec.durable)
            return
        if existing.spec != spec:
            raise DeclarationMismatchError(
                f"PRECONDITION_FAILED - inequivalent arguments for queue '{spec.name}': "
                f"declared {existing.spec}, requested {spec}"
            )

    def _declare_exchange(self, spec: ExchangeSpec) -> None:
        existing = self._exchanges.get(spec.name)
        if existing is None:
            self._exchanges[spec.name] = spec
            logger.debug("memory_exchange_declared", exchange=spec.name, type=spec.type.value)
            return
        if existing != spec:
            raise DeclarationMismatchError(
                f"PRECONDITION_FAILED - inequivalent arguments for exchange '{spec.name}': "
                f"declared {existing}, requested {spec}"
            )

    def _bind(self, binding: Binding) -> None:
        if binding.exchange not in self._exchanges:
            raise EntityNotFoundError(f"NOT_FOUND - no exchange '{binding.exchange}'")
        self._get_queue(binding.queue)
        if binding not in self._bindings:
            self._bindings.append(binding)

    def _delete_queue(self, name: str) -> None:
        queue = self._queues.pop(name, None)
        if queue is None:
            return
        self._bindings = [b for b in self._bindings if b.queue != name]
        for consumer in list(queue.consumers):
            consumer._terminate(None)

    def _route(self, exchange: str, routing_key: str) -> Tuple[str, ...]:
        if exchange == "":
            return (routing_key,) if routing_key in self._queues else ()

        spec = self._exchanges.get(exchange)
        if spec is None:
            raise EntityNotFoundError(f"NOT_FOUND - no exchange '{exchange}'")

        targets: List[str] = []
        for binding in self._bindings:
            if binding.exchange != exchange or binding.queue in targets:
                continue
            if spec.type is ExchangeType.FANOUT:
                matched = True
            elif spec.type is ExchangeType.DIRECT:
                matched = binding.pattern == routing_key
            else:
                matched = topic_matches(binding.pattern, routing_key)
            if matched:
                targets.append(binding.queue)
        return tuple(targets)

    def _publish(self, exchange: str, routing_key: str, envelope: Envelope) -> Tuple[str, ...]:
        targets = self._route(exchange, routing_key)
        stamped = dataclasses.replace(envelope, routing_key=routing_key)
        self.journal.append(PublishedMessage(exchange, routing_key, stamped, targets))

        if not targets:
            logger.debug("memory_message_unroutable", exchange=exchange, routing_key=routing_key)

        now = time.monotonic()
        for name in targets:
            queue = self._queues[name]
            queue.ready.append(_StoredMessage(stamped, now))
            queue.stats.published += 1
            self._dispatch(queue)
        return targets

    def _expire(self, queue: _MemoryQueue) -> None:
        ttl = queue.spec.message_ttl_ms
        if ttl is None:
            return
        now = time.monotonic()
        while queue.ready and (now - queue.ready[0].enqueued_at) * 1000 >= ttl:
            queue.ready.popleft()
            queue.stats.expired += 1

    def _pick_consumer(self, queue: _MemoryQueue) -> Optional[InMemoryConsumer]:
        count = len(queue.consumers)
        for offset in range(count):
            index = (queue.next_consumer + offset) % count
            consumer = queue.consumers[index]
            if consumer.has_capacity:
                queue.next_consumer = index + 1
                return consumer
        return None

    def _dispatch(self, queue: _MemoryQueue) -> None:
        self._expire(queue)
        while queue.ready:
            consumer = self._pick_consumer(queue)
            if consumer is None:
                return
            message = queue.ready.popleft()
            tag = next(self._tags)
            queue.stats.delivered += 1
            if message.redelivered:
                queue.stats.redelivered += 1
            if consumer.no_ack:
                queue.stats.acked += 1
            else:
                queue.unacked[tag] = (message, consumer)
                consumer.in_flight += 1
            consumer.push(InMemoryDelivery(consumer, tag, message))

    def _settle(self, queue_name: str, tag: int, ack: bool, requeue: bool) -> None:
        queue = self._queues.get(queue_name)
        if queue is None:
            # Queue was deleted; its messages are gone
            return
        entry = queue.unacked.pop(tag, None)
        if entry is None:
            raise DeliveryStateError(f"Unknown delivery tag {tag} on '{queue_name}'")
        message, consumer = entry
        consumer.in_flight -= 1
        if ack:
            queue.stats.acked += 1
        elif requeue:
            message.redelivered = True
            queue.ready.appendleft(message)
            queue.stats.requeued += 1
        else:
            queue.stats.rejected += 1
        self._dispatch(queue)

    def _requeue(self, queue: _MemoryQueue, tags: List[int]) -> None:
        # Oldest delivery ends up at the head
        for tag in sorted(tags, reverse=True):
            entry = queue.unacked.pop(tag, None)
            if entry is None:
                continue
            message, consumer = entry
            consumer.in_flight -= 1
            message.redelivered = True
            queue.ready.appendleft(message)
            queue.stats.requeued += 1

    def _add_consumer(self, consumer: InMemoryConsumer) -> None:
        queue = self._get_queue(consumer.queue_name)
        queue.consumers.append(consumer)
        self._dispatch(queue)

    def _remove_consumer(self, consumer: InMemoryConsumer, undelivered: List[int]) -> None:
        queue = self._queues.get(consumer.queue_name)
        if queue is None:
            return
        if consumer in queue.consumers:
            queue.consumers.remove(consumer)
        self._requeue(queue, undelivered)
        if queue.spec.auto_delete and not queue.consumers:
            self._delete_queue(queue.spec.name)
            return
        self._dispatch(queue)

    def _requeue_channel(self, channel: InMemoryChannel) -> None:
        for queue in list(self._queues.values()):
            tags = [tag for tag, (_, consumer) in queue.unacked.items() if consumer.channel is channel]
            if tags:
                self._requeue(queue, tags)
                self._dispatch(queue)

    def _connection_closed(self, connection: InMemoryConnection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
        for name, queue in list(self._queues.items()):
            if queue.owner is connection:
                self._delete_queue(name)
