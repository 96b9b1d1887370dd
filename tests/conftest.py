"""
Pytest configuration and fixtures.
"""
import asyncio
from typing import Any, AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from payment_broker.bus import PaymentBus
from payment_broker.config import Settings
from payment_broker.core.payment_service import PaymentService
from payment_broker.domain.models import Payment, PaymentStatus
from payment_broker.domain.store import InMemoryPaymentStore
from payment_broker.integrations.payment_gateway import SimulatedPaymentGateway
from payment_broker.messaging import BrokerConnectionManager, InMemoryBroker

Eventually = Callable[..., Awaitable[None]]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        rabbitmq_url="memory://test",
        app_name="payment-broker-test",
        app_env="test",
        log_level="DEBUG",
        consumer_ready_attempts=3,
        consumer_ready_delay_seconds=0.01,
        consumer_resubscribe_delay_seconds=0.01,
        rpc_retry_base_delay_seconds=0.0,
        rpc_timeout_seconds=2.0,
        gateway_failure_rate=0.0,
        gateway_latency_seconds=0.0,
        shutdown_timeout_seconds=5.0,
    )


@pytest.fixture
def broker() -> InMemoryBroker:
    """Fresh in-process broker per test."""
    return InMemoryBroker("test")


@pytest_asyncio.fixture
async def manager(
    test_settings: Settings, broker: InMemoryBroker
) -> AsyncGenerator[BrokerConnectionManager, Any]:
    """Connected broker manager."""
    manager = BrokerConnectionManager(test_settings, connector=broker.connect)
    await manager.connect()
    yield manager
    await manager.close()


@pytest.fixture
def store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()


@pytest.fixture
def gateway(test_settings: Settings) -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(test_settings, failure_rate=0.0)


@pytest.fixture
def bus(manager: BrokerConnectionManager) -> PaymentBus:
    return PaymentBus(manager)


@pytest.fixture
def service(
    store: InMemoryPaymentStore, gateway: SimulatedPaymentGateway, bus: PaymentBus
) -> PaymentService:
    return PaymentService(store, gateway, bus)


@pytest.fixture
def sample_payment() -> Payment:
    """Payment used by the end-to-end scenarios."""
    return Payment(
        id="p1",
        user_id="u1",
        order_id="o1",
        amount=50,
        currency="USD",
        status=PaymentStatus.PENDING,
    )


@pytest.fixture
def eventually() -> Eventually:
    """Poll a predicate until it holds, failing after a timeout."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met within timeout")
            await asyncio.sleep(0.01)

    return _eventually
