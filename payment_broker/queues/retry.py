"""
Bounded exponential-backoff retry.

Attempt 0 runs immediately; retry ``n`` waits ``base * 2^(n-1)``. With the
defaults that is 1, 2 and 4 seconds across four attempts in total.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_broker.config import Settings
from payment_broker.monitoring import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]


def _log_retry(retry_state: RetryCallState) -> None:
    metrics.rpc_retry_attempts_total.inc()
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "retry_scheduled",
        retry=retry_state.attempt_number,
        delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error) if error else None,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff base."""

    max_retries: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.rpc_max_retries,
            base_delay=settings.rpc_retry_base_delay_seconds,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based)."""
        if retry < 1:
            return 0.0
        return self.base_delay * 2 ** (retry - 1)

    def retrying(self, sleep: Optional[SleepFn] = None) -> AsyncRetrying:
        """Build a tenacity controller; ``sleep`` is injectable for tests."""
        return AsyncRetrying(
            sleep=sleep or asyncio.sleep,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        sleep: Optional[SleepFn] = None,
    ) -> Tuple[T, int]:
        """
        Run ``operation`` until it succeeds or the budget is spent.

        Returns:
            Tuple[T, int]: Result and the number of retries it took

        Raises:
            Exception: The last failure once every attempt failed
        """
        retries = 0
        async for attempt in self.retrying(sleep):
            with attempt:
                retries = attempt.retry_state.attempt_number - 1
                result = await operation()
        return result, retries
