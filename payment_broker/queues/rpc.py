"""
Request/reply over the ``payment_rpc`` queue.

A request is ``{"method": ..., **args}`` published with ``correlation_id``
and ``reply_to``. The server answers on ``reply_to`` with the same
``correlation_id`` and then acks the request.

``processPaymentWithRetry`` retries with exponential backoff and, once the
budget is spent, parks the request on the dead-letter queue.
"""
import asyncio
import uuid
from typing import TYPE_CHECKING, Any, Dict, Literal, Optional, Tuple, Union

import structlog
from pydantic import ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from payment_broker.config import Settings
from payment_broker.domain.models import WireModel
from payment_broker.messaging import (
    BrokerConnectionManager,
    BrokerError,
    ChannelClosedError,
    ConsumerStream,
    Delivery,
    DeliveryMode,
    Envelope,
    PoisonMessageError,
    QueueConsumer,
    QueueSpec,
    RpcTimeoutError,
)
from payment_broker.monitoring import log_context, metrics

from .dead_letter import DeadLetterQueue
from .retry import RetryPolicy, SleepFn

if TYPE_CHECKING:
    from payment_broker.core.payment_service import PaymentService

logger = structlog.get_logger(__name__)

RPC_QUEUE = QueueSpec("payment_rpc", durable=True)

GET_PAYMENT_STATUS = "getPaymentStatus"
PROCESS_PAYMENT_WITH_RETRY = "processPaymentWithRetry"

MAX_RETRIES_EXCEEDED = "Max retries exceeded"


class RpcRequest(WireModel):
    method: Optional[str] = None


class GetPaymentStatusRequest(RpcRequest):
    method: Literal["getPaymentStatus"] = GET_PAYMENT_STATUS
    payment_id: str = Field(..., min_length=1)


class ProcessPaymentWithRetryRequest(RpcRequest):
    method: Literal["processPaymentWithRetry"] = PROCESS_PAYMENT_WITH_RETRY
    payment_id: str = Field(..., min_length=1)


class UnknownMethodRequest(RpcRequest):
    """Any method the server does not implement."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


AnyRpcRequest = Union[GetPaymentStatusRequest, ProcessPaymentWithRetryRequest, UnknownMethodRequest]

_REQUEST_TYPES = {
    GET_PAYMENT_STATUS: GetPaymentStatusRequest,
    PROCESS_PAYMENT_WITH_RETRY: ProcessPaymentWithRetryRequest,
}


def parse_rpc_request(data: Dict[str, Any]) -> AnyRpcRequest:
    """
    Parse a request body into its variant.

    Raises:
        ValidationError: If a known method is missing its arguments
    """
    model = _REQUEST_TYPES.get(data.get("method"), UnknownMethodRequest)  # type: ignore[arg-type]
    return model.model_validate(data)


class MissingReplyToError(BrokerError):
    """Raised when a request carries no reply address."""

    pass


class RpcServer(QueueConsumer[RpcRequest]):
    """Serves payment RPC methods, one request at a time."""

    queue = RPC_QUEUE
    message_model = RpcRequest
    prefetch = 1

    def __init__(
        self,
        manager: BrokerConnectionManager,
        service: "PaymentService",
        dead_letters: DeadLetterQueue,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[SleepFn] = None,
    ):
        """
        Initialize RPC server.

        Args:
            manager: Broker connection manager
            service: Payment service the methods delegate to
            dead_letters: Where exhausted retries are parked
            retry_policy: Retry budget (defaults to settings)
            sleep: Backoff sleep, injectable for tests
        """
        # Poison requests are rejected, not dead-lettered
        super().__init__(manager)
        self.service = service
        self.dlq = dead_letters
        self.retry_policy = retry_policy or RetryPolicy.from_settings(manager.settings)
        self._sleep = sleep

    def decode(self, delivery: Delivery) -> AnyRpcRequest:
        data = delivery.envelope.decode()
        try:
            return parse_rpc_request(data)
        except ValidationError as e:
            raise PoisonMessageError(f"Invalid RPC request: {e}") from e

    async def handle(self, message: RpcRequest, delivery: Delivery) -> None:
        envelope = delivery.envelope
        if not envelope.reply_to:
            raise MissingReplyToError(f"RPC request '{message.method}' has no reply_to")

        with log_context(rpc_method=message.method, reply_to=envelope.reply_to):
            self.log.info("rpc_request_received", correlation_id=envelope.correlation_id)
            response, status = await self.dispatch(message)

        await self.manager.publish(
            Envelope.from_payload(response, correlation_id=envelope.correlation_id),
            queue=envelope.reply_to,
        )
        metrics.rpc_requests_total.labels(method=message.method or "none", status=status).inc()
        self.log.info("rpc_response_sent", correlation_id=envelope.correlation_id)

    async def dispatch(self, request: RpcRequest) -> Tuple[Dict[str, Any], str]:
        """Run a request; returns the response body and a metrics status."""
        if isinstance(request, GetPaymentStatusRequest):
            payment = await self.service.find_one(request.payment_id)
            return {
                "id": payment.id,
                "paymentId": payment.id,
                "status": payment.status.value,
                "amount": payment.amount,
            }, "success"
        if isinstance(request, ProcessPaymentWithRetryRequest):
            response = await self.process_with_retry(request)
            return response, "success" if response["success"] else "error"
        return {"error": "Unknown method"}, "unknown"

    async def process_with_retry(self, request: ProcessPaymentWithRetryRequest) -> Dict[str, Any]:
        """
        Process a payment with bounded exponential backoff.

        Returns:
            Dict[str, Any]: ``{success, paymentId, retries}`` or, after the last
            failed attempt, ``{success: False, error, sentToDLQ: True}``
        """

        async def attempt() -> str:
            payment = await self.service.find_one(request.payment_id)
            await self.service.process_payment(payment)
            return payment.id

        try:
            payment_id, retries = await self.retry_policy.run(attempt, sleep=self._sleep)
        except Exception as e:
            self.log.error(
                "rpc_retries_exhausted",
                payment_id=request.payment_id,
                attempts=self.retry_policy.max_attempts,
                error=str(e),
            )
            await self.dlq.deposit(
                request,
                reason=f"{MAX_RETRIES_EXCEEDED}: {e}",
                source=self.queue.name,
            )
            return {"success": False, "error": MAX_RETRIES_EXCEEDED, "sentToDLQ": True}

        return {"success": True, "paymentId": payment_id, "retries": retries}

    async def on_failure(self, delivery: Delivery, error: Exception) -> None:
        # Failed RPCs are not requeued; the caller times out instead
        self.log.error(
            "rpc_request_failed",
            correlation_id=delivery.envelope.correlation_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.reject(delivery)


class RpcClient:
    """
    Caller side of the RPC pattern.

    Example:
        >>> client = RpcClient(manager)
        >>> await client.call("getPaymentStatus", paymentId="p1")
        {'id': 'p1', 'paymentId': 'p1', 'status': 'completed', 'amount': 50.0}
    """

    def __init__(self, manager: BrokerConnectionManager, settings: Optional[Settings] = None):
        self.manager = manager
        self.timeout = (settings or manager.settings).rpc_timeout_seconds

    async def call(
        self, method: str, timeout: Optional[float] = None, **args: Any
    ) -> Dict[str, Any]:
        """
        Call a remote method and wait for its reply.

        Args:
            method: RPC method name
            timeout: Seconds to wait for the reply (defaults to settings)
            **args: Request arguments, camelCase as on the wire

        Returns:
            Dict[str, Any]: Decoded reply

        Raises:
            RpcTimeoutError: If no correlated reply arrives in time
            DeliveryError: If the request could not be published
        """
        timeout = self.timeout if timeout is None else timeout
        correlation_id = str(uuid.uuid4())
        reply_queue = QueueSpec(
            f"rpc.reply.{uuid.uuid4().hex}", exclusive=True, auto_delete=True
        )

        channel = await self.manager.ensure_channel()
        await channel.declare_queue(reply_queue)
        stream = await channel.consume(reply_queue.name, no_ack=True)

        try:
            await self.manager.publish(
                Envelope.from_payload(
                    {"method": method, **args},
                    delivery_mode=DeliveryMode.TRANSIENT,
                    correlation_id=correlation_id,
                    reply_to=reply_queue.name,
                ),
                queue=RPC_QUEUE,
            )
            logger.info("rpc_request_sent", method=method, correlation_id=correlation_id)
            return await asyncio.wait_for(self._await_reply(stream, correlation_id), timeout)
        except asyncio.TimeoutError:
            logger.error("rpc_timeout", method=method, correlation_id=correlation_id)
            raise RpcTimeoutError(
                f"No reply to '{method}' within {timeout}s (correlation_id={correlation_id})"
            ) from None
        finally:
            try:
                await stream.cancel()
            except BrokerError as e:
                logger.debug("rpc_reply_cancel_failed", error=str(e))

    async def _await_reply(self, stream: ConsumerStream, correlation_id: str) -> Dict[str, Any]:
        async for delivery in stream:
            if delivery.envelope.correlation_id == correlation_id:
                return delivery.envelope.decode()
            logger.warning(
                "rpc_reply_discarded",
                expected=correlation_id,
                received=delivery.envelope.correlation_id,
            )
        raise ChannelClosedError("Reply subscription ended before a reply arrived")
