"""
Payment records and the pydantic models carried on the wire.

Wire models serialize with camelCase aliases; Python code uses snake_case
attribute names.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    """Lifecycle of a payment record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"


class WireModel(BaseModel):
    """Base for camelCase JSON payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Payment(WireModel):
    """
    Payment record.

    Stored by the payment store and shipped whole on the basic queue.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    order_id: str
    amount: float = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    last4digits: Optional[str] = None
    description: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, status={self.status.value})>"
        )


class CreatePaymentRequest(WireModel):
    """Input for creating a payment."""

    user_id: str = Field(..., min_length=1, description="User identifier")
    order_id: str = Field(..., min_length=1, description="Order identifier")
    amount: float = Field(..., ge=0.01, description="Payment amount")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., USD)")
    payment_method: PaymentMethod = Field(..., description="Payment method")
    last4digits: Optional[str] = Field(
        default=None, pattern=r"^\d{4}$", description="Last four card digits"
    )
    description: Optional[str] = Field(default=None, description="Free-form description")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()


class PaymentMessage(WireModel):
    """Payment snapshot published on the basic queue."""

    id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    last4digits: Optional[str] = None
    status: Optional[str] = None


class WorkItem(WireModel):
    """Durable work queue payload; producers may name the id ``paymentId`` or ``id``."""

    payment_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("paymentId", "id", "payment_id"),
        serialization_alias="paymentId",
    )
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None


class FraudCheckRequest(WireModel):
    """Payload of the ``fraud_check`` queue."""

    payment_id: str = Field(..., min_length=1)
    amount: float
    user_id: str


class PaymentEvent(WireModel):
    """
    Event published on the topic exchange.

    Unknown fields are kept so audit records hold the full event.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    payment_id: str = Field(..., min_length=1)
    type: Optional[str] = None
    amount: Optional[float] = None
    user_id: Optional[str] = None
    reason: Optional[str] = None
    risk_score: Optional[int] = None
