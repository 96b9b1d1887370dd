"""
Tests for the RPC server and client.
"""
from typing import Any, AsyncGenerator, Callable, Optional
from unittest.mock import AsyncMock, call

import pytest
import pytest_asyncio

from payment_broker.core.payment_service import PaymentService
from payment_broker.domain.errors import PaymentDeclinedError
from payment_broker.domain.models import Payment
from payment_broker.domain.store import InMemoryPaymentStore
from payment_broker.messaging import (
    BrokerConnectionManager,
    Envelope,
    InMemoryBroker,
    QueueSpec,
    RpcTimeoutError,
)
from payment_broker.queues.dead_letter import DLQ_NAME, DeadLetterQueue
from payment_broker.queues.retry import RetryPolicy
from payment_broker.queues.rpc import (
    RPC_QUEUE,
    GetPaymentStatusRequest,
    ProcessPaymentWithRetryRequest,
    RpcClient,
    RpcServer,
    UnknownMethodRequest,
    parse_rpc_request,
)

from conftest import Eventually

ServerFactory = Callable[..., Any]


@pytest_asyncio.fixture
async def start_server(
    manager: BrokerConnectionManager,
) -> AsyncGenerator[ServerFactory, None]:
    """Start an RPC server around a service; stopped on teardown."""
    servers = []

    async def _start(service: Any, sleep: Optional[AsyncMock] = None) -> RpcServer:
        server = RpcServer(
            manager,
            service,
            DeadLetterQueue(manager),
            retry_policy=RetryPolicy(max_retries=3, base_delay=1.0),
            sleep=sleep or AsyncMock(),
        )
        await server.start()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        await server.stop()


def flaky_service(payment: Payment, failures: int) -> AsyncMock:
    service = AsyncMock()
    service.find_one.return_value = payment
    errors = [PaymentDeclinedError("card declined") for _ in range(failures)]
    service.process_payment.side_effect = [*errors, payment]
    return service


class TestParseRpcRequest:
    """Test suite for request parsing."""

    @pytest.mark.unit
    def test_known_methods(self) -> None:
        status = parse_rpc_request({"method": "getPaymentStatus", "paymentId": "p1"})
        retry = parse_rpc_request({"method": "processPaymentWithRetry", "paymentId": "p1"})

        assert isinstance(status, GetPaymentStatusRequest)
        assert isinstance(retry, ProcessPaymentWithRetryRequest)
        assert retry.payment_id == "p1"

    @pytest.mark.unit
    def test_unknown_method_keeps_arguments(self) -> None:
        request = parse_rpc_request({"method": "cancelPayment", "paymentId": "p1"})

        assert isinstance(request, UnknownMethodRequest)
        assert request.method == "cancelPayment"


class TestRpcRoundTrip:
    """Test suite for client/server request-reply."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_payment_status(
        self,
        manager: BrokerConnectionManager,
        service: PaymentService,
        store: InMemoryPaymentStore,
        sample_payment: Payment,
        start_server: ServerFactory,
    ) -> None:
        await store.save(sample_payment)
        await start_server(service)

        response = await RpcClient(manager).call("getPaymentStatus", paymentId="p1")

        assert response == {"id": "p1", "paymentId": "p1", "status": "pending", "amount": 50.0}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_process_payment_with_retry_first_try(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        service: PaymentService,
        store: InMemoryPaymentStore,
        sample_payment: Payment,
        start_server: ServerFactory,
        eventually: Eventually,
    ) -> None:
        await store.save(sample_payment)
        await start_server(service)

        response = await RpcClient(manager).call("processPaymentWithRetry", paymentId="p1")

        assert response == {"success": True, "paymentId": "p1", "retries": 0}
        assert (await store.get("p1")).status.value == "completed"
        await eventually(lambda: broker.stats("payment_rpc").acked == 1)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_method(
        self, manager: BrokerConnectionManager, start_server: ServerFactory
    ) -> None:
        await start_server(AsyncMock())

        response = await RpcClient(manager).call("cancelPayment", paymentId="p1")

        assert response == {"error": "Unknown method"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reply_queue_removed_after_call(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        start_server: ServerFactory,
    ) -> None:
        await start_server(AsyncMock())

        await RpcClient(manager).call("cancelPayment")

        assert not [name for name in broker.queue_names() if name.startswith("rpc.reply.")]


class TestProcessWithRetry:
    """Test suite for bounded retry on the server."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_succeeds_after_two_retries(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        sample_payment: Payment,
        start_server: ServerFactory,
    ) -> None:
        """Test two declines then success waits 1s and 2s and reports two retries."""
        sleep = AsyncMock()
        service = flaky_service(sample_payment, failures=2)
        await start_server(service, sleep=sleep)

        response = await RpcClient(manager).call("processPaymentWithRetry", paymentId="p1")

        assert response == {"success": True, "paymentId": "p1", "retries": 2}
        assert sleep.await_args_list == [call(1.0), call(2.0)]
        assert not broker.has_queue(DLQ_NAME) or broker.message_count(DLQ_NAME) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_exhausted_retries_go_to_dlq(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        sample_payment: Payment,
        start_server: ServerFactory,
        eventually: Eventually,
    ) -> None:
        """Test four failed attempts park the request on the DLQ."""
        sleep = AsyncMock()
        service = flaky_service(sample_payment, failures=10)
        await start_server(service, sleep=sleep)

        response = await RpcClient(manager).call("processPaymentWithRetry", paymentId="p1")

        assert response == {
            "success": False,
            "error": "Max retries exceeded",
            "sentToDLQ": True,
        }
        assert service.process_payment.await_count == 4
        assert sleep.await_args_list == [call(1.0), call(2.0), call(4.0)]
        entry = broker.peek(DLQ_NAME)[0].decode()
        assert entry["paymentId"] == "p1"
        assert entry["method"] == "processPaymentWithRetry"
        assert entry["failureReason"] == "Max retries exceeded: card declined"
        await eventually(lambda: broker.stats("payment_rpc").acked == 1)


class TestRpcFailures:
    """Test suite for requests that get no reply."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_payment_times_out_and_rejects(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        service: PaymentService,
        start_server: ServerFactory,
        eventually: Eventually,
    ) -> None:
        await start_server(service)

        with pytest.raises(RpcTimeoutError):
            await RpcClient(manager).call("getPaymentStatus", timeout=0.2, paymentId="missing")

        await eventually(lambda: broker.stats("payment_rpc").rejected == 1)
        assert broker.message_count("payment_rpc") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_without_server(
        self, manager: BrokerConnectionManager, broker: InMemoryBroker
    ) -> None:
        with pytest.raises(RpcTimeoutError, match="getPaymentStatus"):
            await RpcClient(manager).call("getPaymentStatus", timeout=0.05, paymentId="p1")

        assert broker.message_count("payment_rpc") == 1
        request = broker.peek("payment_rpc")[0]
        assert request.correlation_id
        assert request.reply_to.startswith("rpc.reply.")
        assert not broker.has_queue(request.reply_to)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_without_reply_to_is_rejected(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        start_server: ServerFactory,
        eventually: Eventually,
    ) -> None:
        service = AsyncMock()
        await start_server(service)

        await manager.publish(
            Envelope.from_payload({"method": "getPaymentStatus", "paymentId": "p1"}),
            queue=RPC_QUEUE,
        )
        await eventually(lambda: broker.stats("payment_rpc").rejected == 1)

        service.find_one.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_request_is_rejected(
        self,
        manager: BrokerConnectionManager,
        broker: InMemoryBroker,
        start_server: ServerFactory,
        eventually: Eventually,
    ) -> None:
        await start_server(AsyncMock())

        await manager.publish(
            Envelope(body=b"not json", correlation_id="c1", reply_to="nowhere"),
            queue=RPC_QUEUE,
        )
        await eventually(lambda: broker.stats("payment_rpc").rejected == 1)

        assert not broker.has_queue(DLQ_NAME) or broker.message_count(DLQ_NAME) == 0


class TestAwaitReply:
    """Test suite for reply correlation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mismatched_correlation_id_is_discarded(
        self, manager: BrokerConnectionManager
    ) -> None:
        channel = await manager.ensure_channel()
        replies = QueueSpec("replies", exclusive=True)
        await channel.declare_queue(replies)
        stream = await channel.consume(replies.name, no_ack=True)
        await channel.publish("", "replies", Envelope.from_payload({"n": 1}, correlation_id="other"))
        await channel.publish("", "replies", Envelope.from_payload({"n": 2}, correlation_id="wanted"))

        reply = await RpcClient(manager)._await_reply(stream, "wanted")

        assert reply == {"n": 2}
        await stream.cancel()
