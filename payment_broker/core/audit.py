"""
Audit trail of payment events.

Append-only; every record is also emitted as a structured log line so the
trail survives in log storage.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from payment_broker.domain.models import PaymentEvent, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    """One audited event. Immutable once written."""

    payment_id: str
    event_type: Optional[str]
    routing_key: str
    payload: Dict[str, Any]
    recorded_at: datetime = field(default_factory=utcnow)


class AuditLog:
    """In-memory audit sink."""

    def __init__(self) -> None:
        self._records: List[AuditRecord] = []

    async def record(self, event: PaymentEvent, routing_key: str = "") -> AuditRecord:
        record = AuditRecord(
            payment_id=event.payment_id,
            event_type=event.type,
            routing_key=routing_key,
            payload=event.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        self._records.append(record)
        logger.info(
            "audit_record_written",
            payment_id=record.payment_id,
            event_type=record.event_type,
            routing_key=routing_key,
        )
        return record

    @property
    def records(self) -> List[AuditRecord]:
        return list(self._records)

    def for_payment(self, payment_id: str) -> List[AuditRecord]:
        return [r for r in self._records if r.payment_id == payment_id]

    def __len__(self) -> int:
        return len(self._records)
