"""
Simulated payment provider.

Stands in for a card processor: payment intents succeed or decline at a
configurable rate, refunds always succeed, and fraud scoring is a
threshold on the amount.
"""
import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from payment_broker.config import Settings, get_settings
from payment_broker.domain.errors import PaymentDeclinedError

logger = structlog.get_logger(__name__)

HIGH_RISK_AMOUNT = 10000
MEDIUM_RISK_AMOUNT = 1000


class FraudRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_RISK_SCORES = {
    FraudRisk.HIGH: 85,
    FraudRisk.MEDIUM: 45,
    FraudRisk.LOW: 10,
}


@dataclass(frozen=True)
class FraudAssessment:
    """Result of a fraud check."""

    risk: FraudRisk
    score: int

    @property
    def is_high_risk(self) -> bool:
        return self.risk is FraudRisk.HIGH


class SimulatedPaymentGateway:
    """
    In-process payment provider.

    Example:
        >>> gateway = SimulatedPaymentGateway(failure_rate=0.0)
        >>> intent = await gateway.create_payment_intent(50.0, "USD")
        >>> intent["status"]
        'succeeded'
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        failure_rate: Optional[float] = None,
        latency_seconds: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize gateway.

        Args:
            settings: Optional settings (defaults to environment settings)
            failure_rate: Probability a payment intent is declined
            latency_seconds: Simulated network latency per call
            rng: Random source, injectable for deterministic tests
        """
        settings = settings or get_settings()
        self.failure_rate = (
            settings.gateway_failure_rate if failure_rate is None else failure_rate
        )
        self.latency_seconds = (
            settings.gateway_latency_seconds if latency_seconds is None else latency_seconds
        )
        self._rng = rng or random.Random()

        logger.info(
            "payment_gateway_initialized",
            failure_rate=self.failure_rate,
            latency_seconds=self.latency_seconds,
        )

    async def _delay(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

    async def create_payment_intent(
        self,
        amount: float,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Charge a payment.

        Returns:
            Dict[str, Any]: Payment intent with ``id`` and ``status``

        Raises:
            PaymentDeclinedError: When the simulated provider declines
        """
        await self._delay()

        if self._rng.random() < self.failure_rate:
            logger.warning("payment_intent_declined", currency=currency)
            raise PaymentDeclinedError(
                "Payment failed: Insufficient funds", decline_code="insufficient_funds"
            )

        intent_id = f"pi_sim_{int(time.time() * 1000)}_{self._rng.randrange(10**6):06d}"
        logger.info("payment_intent_created", payment_intent_id=intent_id)
        return {
            "id": intent_id,
            "status": "succeeded",
            "amount": amount,
            "currency": currency,
            "metadata": metadata or {},
        }

    async def create_refund(
        self, payment_intent_id: Optional[str], amount: Optional[float] = None
    ) -> Dict[str, Any]:
        """Refund a payment intent, fully when ``amount`` is None."""
        await self._delay()

        refund_id = f"re_sim_{int(time.time() * 1000)}_{self._rng.randrange(10**6):06d}"
        logger.info(
            "refund_created",
            refund_id=refund_id,
            payment_intent_id=payment_intent_id,
            partial=amount is not None,
        )
        return {
            "id": refund_id,
            "status": "succeeded",
            "payment_intent": payment_intent_id,
            "amount": amount,
        }

    async def check_fraud(self, amount: float, user_id: str) -> FraudAssessment:
        """Score a payment by amount."""
        await self._delay()

        if amount > HIGH_RISK_AMOUNT:
            risk = FraudRisk.HIGH
        elif amount > MEDIUM_RISK_AMOUNT:
            risk = FraudRisk.MEDIUM
        else:
            risk = FraudRisk.LOW
        return FraudAssessment(risk=risk, score=_RISK_SCORES[risk])
