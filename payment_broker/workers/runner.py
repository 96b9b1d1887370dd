"""
Payment workers entry point.

Connects to the broker, starts every consumer and runs until SIGINT or
SIGTERM, then stops consumers and closes the broker link within the
shutdown deadline.
"""
import asyncio
import signal
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from payment_broker.bus import PaymentBus
from payment_broker.config import Settings, get_settings
from payment_broker.core.audit import AuditLog
from payment_broker.core.payment_service import PaymentService
from payment_broker.domain.store import InMemoryPaymentStore, PaymentStore
from payment_broker.integrations.notifier import EmailNotifier
from payment_broker.integrations.payment_gateway import SimulatedPaymentGateway
from payment_broker.messaging import BrokerConnectionManager, QueueConsumer
from payment_broker.messaging.transport import Connector
from payment_broker.monitoring import setup_logging
from payment_broker.monitoring.health import BrokerHealthCheck
from payment_broker.queues.basic import BasicPaymentConsumer
from payment_broker.queues.dead_letter import DeadLetterConsumer
from payment_broker.queues.rpc import RpcServer
from payment_broker.queues.topic import (
    ApprovedPaymentsConsumer,
    AuditLogConsumer,
    EmailNotificationConsumer,
    RefundRequestsConsumer,
)
from payment_broker.queues.work_queue import FraudCheckConsumer, PaymentProcessingConsumer

logger = structlog.get_logger(__name__)


@dataclass
class PaymentApplication:
    """Everything a worker process runs, wired together."""

    settings: Settings
    manager: BrokerConnectionManager
    bus: PaymentBus
    store: PaymentStore
    gateway: SimulatedPaymentGateway
    notifier: EmailNotifier
    audit: AuditLog
    service: PaymentService
    health: BrokerHealthCheck
    consumers: List[QueueConsumer] = field(default_factory=list)

    async def start(self) -> None:
        """
        Connect and start all consumers concurrently.

        Raises:
            TransportError: If the broker cannot be reached
            ConsumerStartupError: If a consumer gives up waiting for the channel
        """
        await self.manager.connect()
        await self.bus.declare_topology()
        await asyncio.gather(*(consumer.start() for consumer in self.consumers))
        logger.info("payment_workers_started", consumers=len(self.consumers))

    async def stop(self) -> None:
        """Stop consumers and close the broker link within the shutdown deadline."""
        try:
            await asyncio.wait_for(self._shutdown(), self.settings.shutdown_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(
                "payment_workers_shutdown_timeout",
                timeout_seconds=self.settings.shutdown_timeout_seconds,
            )
        logger.info("payment_workers_stopped")

    async def _shutdown(self) -> None:
        results = await asyncio.gather(
            *(consumer.stop() for consumer in self.consumers), return_exceptions=True
        )
        for consumer, result in zip(self.consumers, results):
            if isinstance(result, Exception):
                logger.error(
                    "consumer_stop_failed",
                    consumer=type(consumer).__name__,
                    error=str(result),
                )
        await self.manager.close()


def build_application(
    settings: Optional[Settings] = None,
    connector: Optional[Connector] = None,
    store: Optional[PaymentStore] = None,
    gateway: Optional[SimulatedPaymentGateway] = None,
) -> PaymentApplication:
    """
    Wire the broker, publishers, services and consumers.

    Args:
        settings: Optional settings (defaults to environment settings)
        connector: Optional broker connector (defaults to the settings URL)
        store: Optional payment store (defaults to in-memory)
        gateway: Optional payment gateway (defaults to the simulated one)

    Raises:
        ConfigurationError: If the broker URL is malformed
    """
    settings = settings or get_settings()
    manager = BrokerConnectionManager(settings, connector=connector)
    bus = PaymentBus(manager, settings)
    store = store or InMemoryPaymentStore()
    gateway = gateway or SimulatedPaymentGateway(settings)
    notifier = EmailNotifier()
    audit = AuditLog()
    service = PaymentService(store, gateway, bus)
    dlq = bus.dead_letters

    consumers: List[QueueConsumer] = [
        BasicPaymentConsumer(manager, service),
        PaymentProcessingConsumer(manager, service, dead_letters=dlq),
        FraudCheckConsumer(manager, gateway, bus.topics, dead_letters=dlq),
        ApprovedPaymentsConsumer(manager, service, dead_letters=dlq),
        RefundRequestsConsumer(manager, service, dead_letters=dlq),
        EmailNotificationConsumer(manager, notifier, dead_letters=dlq),
        AuditLogConsumer(manager, audit),
        RpcServer(manager, service, dlq),
        DeadLetterConsumer(manager),
    ]

    return PaymentApplication(
        settings=settings,
        manager=manager,
        bus=bus,
        store=store,
        gateway=gateway,
        notifier=notifier,
        audit=audit,
        service=service,
        health=BrokerHealthCheck(manager),
        consumers=consumers,
    )


async def run_workers(
    settings: Optional[Settings] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the payment workers until a shutdown signal arrives.

    Args:
        settings: Optional settings (defaults to environment settings)
        stop_event: Optional event that ends the run when set
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info("payment_workers_starting", app_env=settings.app_env)

    app = build_application(settings)
    stop_event = stop_event or asyncio.Event()

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            logger.debug("signal_handler_unavailable", signal=sig.name)

    try:
        await app.start()
        health = await app.health.check_all()
        logger.info("payment_workers_health", status=health["status"])
        await stop_event.wait()
        logger.info("payment_workers_shutdown_signal_received")
    except Exception as e:
        logger.error("payment_workers_error", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        await app.stop()


def main() -> None:
    asyncio.run(run_workers())


if __name__ == "__main__":
    main()
