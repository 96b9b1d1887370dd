"""
RabbitMQ transport built on aio-pika.

Uses plain (non-robust) connections: reconnection is owned by
``BrokerConnectionManager`` so every component observes the same link state.
aio-pika/aiormq exceptions are translated into the broker error taxonomy.
"""
import asyncio
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import aio_pika
import structlog
from aio_pika import exceptions as amqp_exceptions
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from .envelope import (
    Binding,
    DeliveryMode,
    Envelope,
    ExchangeSpec,
    ExchangeType,
    JSON_CONTENT_TYPE,
    QueueSpec,
)
from .exceptions import (
    BrokerError,
    ChannelClosedError,
    ConnectionLostError,
    DeclarationMismatchError,
    DeliveryStateError,
    EntityNotFoundError,
)
from .transport import (
    BrokerChannel,
    BrokerConnection,
    CloseCallback,
    ConsumerStream,
    Delivery,
)

logger = structlog.get_logger(__name__)

_EXCHANGE_TYPES = {
    ExchangeType.DIRECT: aio_pika.ExchangeType.DIRECT,
    ExchangeType.FANOUT: aio_pika.ExchangeType.FANOUT,
    ExchangeType.TOPIC: aio_pika.ExchangeType.TOPIC,
}


@contextmanager
def _amqp_errors() -> Iterator[None]:
    """Translate aio-pika/aiormq exceptions into broker errors."""
    try:
        yield
    except BrokerError:
        raise
    except amqp_exceptions.ChannelPreconditionFailed as e:
        raise DeclarationMismatchError(str(e)) from e
    except amqp_exceptions.ChannelNotFoundEntity as e:
        raise EntityNotFoundError(str(e)) from e
    except (
        amqp_exceptions.ChannelClosed,
        amqp_exceptions.ChannelInvalidStateError,
    ) as e:
        raise ChannelClosedError(str(e) or "Channel closed") from e
    except (
        amqp_exceptions.AMQPConnectionError,
        amqp_exceptions.ConnectionClosed,
        ConnectionError,
    ) as e:
        raise ConnectionLostError(str(e) or "Connection closed") from e


class AmqpDelivery(Delivery):
    """Wraps an aio-pika incoming message."""

    def __init__(self, message: AbstractIncomingMessage, queue: str, no_ack: bool):
        self._message = message
        self.queue = queue
        self.delivery_tag = message.delivery_tag or 0
        self.redelivered = bool(message.redelivered)
        self._settled = no_ack
        self.envelope = Envelope(
            body=message.body,
            routing_key=message.routing_key or "",
            delivery_mode=_delivery_mode(message.delivery_mode),
            correlation_id=message.correlation_id,
            reply_to=message.reply_to,
            content_type=message.content_type or JSON_CONTENT_TYPE,
            headers=dict(message.headers or {}),
        )

    @property
    def settled(self) -> bool:
        return self._settled

    def _check_unsettled(self) -> None:
        if self._settled:
            raise DeliveryStateError(
                f"Delivery {self.delivery_tag} on '{self.queue}' is already settled"
            )

    async def ack(self) -> None:
        self._check_unsettled()
        with _amqp_errors():
            await self._message.ack()
        self._settled = True

    async def nack(self, requeue: bool = True) -> None:
        self._check_unsettled()
        with _amqp_errors():
            await self._message.nack(requeue=requeue)
        self._settled = True

    async def reject(self, requeue: bool = False) -> None:
        self._check_unsettled()
        with _amqp_errors():
            await self._message.reject(requeue=requeue)
        self._settled = True


def _delivery_mode(value: Any) -> DeliveryMode:
    try:
        return DeliveryMode(int(value))
    except (TypeError, ValueError):
        return DeliveryMode.TRANSIENT


class AmqpConsumerStream(ConsumerStream):
    """Iterates a queue through aio-pika's queue iterator."""

    def __init__(self, queue: AbstractQueue, no_ack: bool):
        self._queue = queue
        self._no_ack = no_ack
        self._iterator = queue.iterator(no_ack=no_ack)

    async def start(self) -> None:
        """Send basic.consume now instead of on the first iteration."""
        await self._iterator.consume()

    async def __anext__(self) -> Delivery:
        with _amqp_errors():
            message = await self._iterator.__anext__()
        return AmqpDelivery(message, self._queue.name, self._no_ack)

    async def cancel(self) -> None:
        with _amqp_errors():
            await self._iterator.close()


class AmqpChannel(BrokerChannel):
    """aio-pika channel adapter."""

    def __init__(self, channel: AbstractChannel):
        self._channel = channel
        self._queues: Dict[str, AbstractQueue] = {}
        self._exchanges: Dict[str, AbstractExchange] = {}
        # basic.qos and basic.consume must be sent back to back
        self._consume_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return not self._channel.is_closed

    async def declare_queue(self, spec: QueueSpec) -> None:
        with _amqp_errors():
            self._queues[spec.name] = await self._channel.declare_queue(
                spec.name,
                durable=spec.durable,
                exclusive=spec.exclusive,
                auto_delete=spec.auto_delete,
                arguments=spec.arguments or None,
            )

    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        with _amqp_errors():
            self._exchanges[spec.name] = await self._channel.declare_exchange(
                spec.name,
                _EXCHANGE_TYPES[ExchangeType(spec.type)],
                durable=spec.durable,
            )

    async def _queue(self, name: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            queue = await self._channel.get_queue(name, ensure=True)
            self._queues[name] = queue
        return queue

    async def _exchange(self, name: str) -> AbstractExchange:
        if name == "":
            return self._channel.default_exchange
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = await self._channel.get_exchange(name, ensure=True)
            self._exchanges[name] = exchange
        return exchange

    async def bind_queue(self, binding: Binding) -> None:
        with _amqp_errors():
            queue = await self._queue(binding.queue)
            exchange = await self._exchange(binding.exchange)
            await queue.bind(exchange, routing_key=binding.pattern)

    async def publish(self, exchange: str, routing_key: str, envelope: Envelope) -> None:
        message = aio_pika.Message(
            body=envelope.body,
            content_type=envelope.content_type,
            delivery_mode=aio_pika.DeliveryMode(int(envelope.delivery_mode)),
            correlation_id=envelope.correlation_id,
            reply_to=envelope.reply_to,
            headers=envelope.headers or None,
        )
        with _amqp_errors():
            target = await self._exchange(exchange)
            await target.publish(message, routing_key=routing_key)

    async def consume(
        self, queue: str, prefetch: int = 0, no_ack: bool = False
    ) -> ConsumerStream:
        with _amqp_errors():
            stream = AmqpConsumerStream(await self._queue(queue), no_ack)
            # basic.qos applies to consumers created after it on this channel
            async with self._consume_lock:
                await self._channel.set_qos(prefetch_count=prefetch)
                await stream.start()
        return stream

    async def close(self) -> None:
        with _amqp_errors():
            await self._channel.close()


class AmqpConnection(BrokerConnection):
    """aio-pika connection adapter."""

    def __init__(self, connection: AbstractConnection):
        self._connection = connection

    @classmethod
    async def open(cls, url: str, heartbeat: int = 60) -> "AmqpConnection":
        """
        Connect to RabbitMQ.

        Raises:
            ConnectionLostError: If the broker cannot be reached
        """
        with _amqp_errors():
            connection = await aio_pika.connect(url, heartbeat=heartbeat)
        return cls(connection)

    @property
    def is_closed(self) -> bool:
        return self._connection.is_closed

    async def channel(self) -> BrokerChannel:
        with _amqp_errors():
            channel = await self._connection.channel(publisher_confirms=True)
        return AmqpChannel(channel)

    def add_close_callback(self, callback: CloseCallback) -> None:
        def on_close(sender: Any, exc: Optional[BaseException] = None) -> None:
            callback(exc)

        self._connection.close_callbacks.add(on_close)

    async def close(self) -> None:
        with _amqp_errors():
            await self._connection.close()
