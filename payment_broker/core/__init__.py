"""Core payment logic: the payment service and the audit trail."""
from .audit import AuditLog, AuditRecord
from .payment_service import PaymentService

__all__ = ["AuditLog", "AuditRecord", "PaymentService"]
