"""Payment provider and notification integrations."""
from .notifier import EmailNotifier, SentEmail
from .payment_gateway import FraudAssessment, FraudRisk, SimulatedPaymentGateway

__all__ = [
    "EmailNotifier",
    "FraudAssessment",
    "FraudRisk",
    "SentEmail",
    "SimulatedPaymentGateway",
]
