"""
Queue consumer base class.

Each consumer runs one consumption loop per queue and dispatches one task per
delivery. Every exit path of a task settles the delivery exactly once:
success, handled failure, poison payload, or an unexpected exception.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Generic, Optional, Set, Tuple, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from payment_broker.monitoring import log_context, metrics

from .connection import BrokerConnectionManager
from .envelope import Binding, ExchangeSpec, QueueSpec
from .exceptions import BrokerError, ConsumerStartupError, DeliveryError, PoisonMessageError
from .transport import ConsumerStream, Delivery

if TYPE_CHECKING:
    from payment_broker.queues.dead_letter import DeadLetterQueue

logger = structlog.get_logger(__name__)

MessageT = TypeVar("MessageT", bound=BaseModel)


class QueueConsumer(ABC, Generic[MessageT]):
    """
    Base class for queue consumers.

    Subclasses set ``queue`` and ``message_model`` and implement ``handle``.
    Settlement policies are hooks:

    - ``on_success``: ack
    - ``on_failure``: nack with requeue
    - ``on_poison``: dead-letter (when a DLQ is attached) and ack, otherwise reject
    """

    queue: QueueSpec
    message_model: Type[MessageT]
    prefetch: int = 1
    exchange: Optional[ExchangeSpec] = None
    binding_patterns: Tuple[str, ...] = ()

    def __init__(
        self,
        manager: BrokerConnectionManager,
        dead_letters: Optional["DeadLetterQueue"] = None,
    ):
        self.manager = manager
        self.dead_letters = dead_letters
        settings = manager.settings
        self.ready_attempts = settings.consumer_ready_attempts
        self.ready_delay = settings.consumer_ready_delay_seconds
        self.resubscribe_delay = settings.consumer_resubscribe_delay_seconds
        self._stream: Optional[ConsumerStream] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._running = False
        self.log = logger.bind(consumer=type(self).__name__, queue=self.queue.name)

    @property
    def bindings(self) -> Tuple[Binding, ...]:
        if self.exchange is None:
            return ()
        return tuple(
            Binding(self.exchange.name, self.queue.name, pattern)
            for pattern in self.binding_patterns
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def wait_for_channel(self) -> None:
        """
        Poll until the shared channel exists.

        Raises:
            ConsumerStartupError: If the channel is not ready after the bounded wait
        """
        for attempt in range(1, self.ready_attempts + 1):
            if self.manager.is_ready:
                return
            self.log.info(
                "consumer_waiting_for_broker",
                attempt=attempt,
                max_attempts=self.ready_attempts,
            )
            await asyncio.sleep(self.ready_delay)

        if self.manager.is_ready:
            return
        raise ConsumerStartupError(
            f"{type(self).__name__}: failed to connect to the broker after "
            f"{self.ready_attempts} attempts"
        )

    async def declare_topology(self) -> None:
        """Declare the queue, exchange and bindings this consumer depends on."""
        channel = await self.manager.ensure_channel()
        await channel.declare_queue(self.queue)
        if self.exchange is not None:
            await channel.declare_exchange(self.exchange)
            for binding in self.bindings:
                await channel.bind_queue(binding)

    async def start(self) -> None:
        """Wait for the broker, declare topology and start consuming."""
        if self._running:
            return
        await self.wait_for_channel()
        await self.declare_topology()
        await self._subscribe()
        self._running = True
        self._loop_task = asyncio.create_task(
            self._consume_loop(), name=f"consume:{self.queue.name}"
        )
        self.log.info("consumer_started", prefetch=self.prefetch)

    async def _subscribe(self) -> ConsumerStream:
        channel = await self.manager.ensure_channel()
        stream = await channel.consume(self.queue.name, prefetch=self.prefetch)
        self._stream = stream
        return stream

    async def _consume_loop(self) -> None:
        while self._running:
            try:
                stream = self._stream
                if stream is None:
                    await self.declare_topology()
                    stream = await self._subscribe()
                async for delivery in stream:
                    task = asyncio.create_task(self._process(delivery))
                    self._in_flight.add(task)
                    task.add_done_callback(self._in_flight.discard)
            except asyncio.CancelledError:
                raise
            except BrokerError as e:
                self.log.warning("consumer_subscription_lost", error=str(e))
            except Exception as e:
                self.log.error(
                    "consumer_loop_error", error=str(e), error_type=type(e).__name__
                )

            self._stream = None
            if self._running:
                await asyncio.sleep(self.resubscribe_delay)

    async def stop(self) -> None:
        """Stop consuming and wait for in-flight deliveries to settle."""
        if not self._running:
            return
        self._running = False

        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                await stream.cancel()
            except BrokerError as e:
                self.log.debug("consumer_cancel_failed", error=str(e))

        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        self.log.info("consumer_stopped")

    def decode(self, delivery: Delivery) -> MessageT:
        """
        Decode and validate a delivery.

        Raises:
            PoisonMessageError: If the payload is not a well-formed message
        """
        data = delivery.envelope.decode()
        try:
            return self.message_model.model_validate(data)
        except ValidationError as e:
            raise PoisonMessageError(f"Invalid {self.message_model.__name__}: {e}") from e

    @abstractmethod
    async def handle(self, message: MessageT, delivery: Delivery) -> None:
        """Process one decoded message; raising marks the delivery as failed."""

    async def _process(self, delivery: Delivery) -> None:
        with log_context(
            queue=self.queue.name,
            delivery_tag=delivery.delivery_tag,
            correlation_id=delivery.envelope.correlation_id,
        ):
            await self._settle(delivery)

    async def _settle(self, delivery: Delivery) -> None:
        started = time.perf_counter()
        try:
            try:
                message = self.decode(delivery)
            except PoisonMessageError as e:
                await self.on_poison(delivery, e)
                return

            try:
                await self.handle(message, delivery)
            except Exception as e:
                await self.on_failure(delivery, e)
            else:
                await self.on_success(delivery)
        except Exception as e:
            # Settlement itself failed (e.g. channel closed); the broker requeues
            self.log.error(
                "consumer_settlement_failed",
                delivery_tag=delivery.delivery_tag,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            metrics.message_processing_seconds.labels(queue=self.queue.name).observe(
                time.perf_counter() - started
            )

    async def ack(self, delivery: Delivery) -> None:
        await delivery.ack()
        metrics.messages_consumed_total.labels(queue=self.queue.name, outcome="ack").inc()

    async def requeue(self, delivery: Delivery) -> None:
        await delivery.nack(requeue=True)
        metrics.messages_consumed_total.labels(queue=self.queue.name, outcome="requeue").inc()

    async def reject(self, delivery: Delivery) -> None:
        await delivery.nack(requeue=False)
        metrics.messages_consumed_total.labels(queue=self.queue.name, outcome="reject").inc()

    async def on_success(self, delivery: Delivery) -> None:
        await self.ack(delivery)

    async def on_failure(self, delivery: Delivery, error: Exception) -> None:
        self.log.error(
            "message_processing_failed",
            delivery_tag=delivery.delivery_tag,
            redelivered=delivery.redelivered,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.requeue(delivery)

    async def on_poison(self, delivery: Delivery, error: PoisonMessageError) -> None:
        self.log.error(
            "poison_message_received",
            delivery_tag=delivery.delivery_tag,
            error=str(error),
        )
        if self.dead_letters is None:
            await self.reject(delivery)
            return

        try:
            await self.dead_letters.deposit_raw(
                delivery.envelope, reason=str(error), source=self.queue.name
            )
        except DeliveryError as e:
            self.log.error("dead_letter_deposit_failed", error=str(e))
            await self.requeue(delivery)
            return

        await delivery.ack()
        metrics.messages_consumed_total.labels(
            queue=self.queue.name, outcome="dead_letter"
        ).inc()
