"""Domain exceptions for payment processing."""
from typing import Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentNotFoundError(PaymentError):
    """Raised when a payment record does not exist."""

    def __init__(self, payment_id: str):
        super().__init__(f"Payment with ID {payment_id} not found")
        self.payment_id = payment_id


class PaymentDeclinedError(PaymentError):
    """Raised when the payment provider declines a charge."""

    def __init__(self, message: str, decline_code: Optional[str] = None):
        super().__init__(message)
        self.decline_code = decline_code


class RefundNotAllowedError(PaymentError):
    """Raised when a refund is requested for a payment that is not completed."""

    pass
