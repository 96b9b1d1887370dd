"""Payment domain: records, wire payloads, errors and storage."""
from .errors import (
    PaymentDeclinedError,
    PaymentError,
    PaymentNotFoundError,
    RefundNotAllowedError,
)
from .models import (
    CreatePaymentRequest,
    FraudCheckRequest,
    Payment,
    PaymentEvent,
    PaymentMessage,
    PaymentMethod,
    PaymentStatus,
    WorkItem,
)
from .store import InMemoryPaymentStore, PaymentStore

__all__ = [
    "CreatePaymentRequest",
    "FraudCheckRequest",
    "InMemoryPaymentStore",
    "Payment",
    "PaymentDeclinedError",
    "PaymentError",
    "PaymentEvent",
    "PaymentMessage",
    "PaymentMethod",
    "PaymentNotFoundError",
    "PaymentStatus",
    "PaymentStore",
    "WorkItem",
]
