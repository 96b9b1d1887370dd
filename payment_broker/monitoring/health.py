"""
Health checks for readiness/liveness probes.

Checks:
- Broker link state
- Availability of a live channel
"""
from typing import Any, Dict

import structlog

from payment_broker.messaging.connection import BrokerConnectionManager, LinkState

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class BrokerHealthCheck:
    """Health check service for the shared broker link."""

    def __init__(self, manager: BrokerConnectionManager) -> None:
        self.manager = manager

    async def check_broker(self) -> Dict[str, Any]:
        """
        Check broker connectivity.

        Returns:
            Dict[str, Any]: Broker health status

        Raises:
            HealthCheckError: If no live channel is available
        """
        state = self.manager.state
        if state is not LinkState.OPEN or not self.manager.is_ready:
            last_error = self.manager.last_error
            logger.error(
                "broker_health_check_failed",
                state=state.value,
                last_error=str(last_error) if last_error else None,
            )
            raise HealthCheckError(f"Broker link is {state.value}")

        return {
            "status": "healthy",
            "service": "broker",
            "message": "Broker channel is open",
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check and aggregate the result.

        Returns:
            Dict[str, Any]: Overall health status
        """
        try:
            broker = await self.check_broker()
        except HealthCheckError as e:
            return {
                "status": "unhealthy",
                "checks": {"broker": {"status": "unhealthy", "error": str(e)}},
            }
        return {"status": "healthy", "checks": {"broker": broker}}
