"""Payment record storage."""
import asyncio
from typing import Dict, List, Optional, Protocol

import structlog

from .models import Payment, PaymentStatus

logger = structlog.get_logger(__name__)


class PaymentStore(Protocol):
    """Persistence interface the payment service depends on."""

    async def get(self, payment_id: str) -> Optional[Payment]: ...

    async def save(self, payment: Payment) -> Payment: ...

    async def update_status(self, payment_id: str, status: PaymentStatus) -> None: ...

    async def list_recent(self, limit: int = 100) -> List[Payment]: ...


class InMemoryPaymentStore:
    """
    Dict-backed payment store.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._payments: Dict[str, Payment] = {}
        self._lock = asyncio.Lock()

    async def get(self, payment_id: str) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        return payment.model_copy() if payment is not None else None

    async def save(self, payment: Payment) -> Payment:
        async with self._lock:
            self._payments[payment.id] = payment.model_copy()
        return payment

    async def update_status(self, payment_id: str, status: PaymentStatus) -> None:
        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                # Matches an UPDATE ... WHERE id = ? that touches no rows
                logger.debug("payment_status_update_missed", payment_id=payment_id)
                return
            self._payments[payment_id] = payment.model_copy(update={"status": status})

    async def list_recent(self, limit: int = 100) -> List[Payment]:
        payments = sorted(self._payments.values(), key=lambda p: p.created_at, reverse=True)
        return [p.model_copy() for p in payments[:limit]]

    def __len__(self) -> int:
        return len(self._payments)
