"""Email notifications for payment events (simulated delivery)."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import structlog

from payment_broker.domain.models import PaymentEvent, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SentEmail:
    payment_id: str
    event_type: Optional[str]
    recipient: Optional[str]
    sent_at: datetime = field(default_factory=utcnow)


class EmailNotifier:
    """
    Sends one email per payment event.

    Delivery is simulated: each email is logged and kept in ``sent``.
    """

    def __init__(self) -> None:
        self.sent: List[SentEmail] = []

    async def send(self, event: PaymentEvent) -> SentEmail:
        email = SentEmail(
            payment_id=event.payment_id,
            event_type=event.type,
            recipient=event.user_id,
        )
        self.sent.append(email)
        logger.info(
            "email_notification_sent",
            payment_id=event.payment_id,
            event_type=event.type,
        )
        return email
