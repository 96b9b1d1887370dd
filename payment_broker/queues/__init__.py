"""Messaging patterns: basic, durable work, topic, dead-letter and RPC queues."""
from .basic import PAYMENTS_QUEUE, BasicPaymentConsumer, BasicQueue
from .dead_letter import DLQ_NAME, DeadLetterConsumer, DeadLetterEntry, DeadLetterQueue
from .retry import RetryPolicy
from .rpc import RPC_QUEUE, RpcClient, RpcServer, parse_rpc_request
from .topic import (
    PAYMENT_EVENTS_EXCHANGE,
    ApprovedPaymentsConsumer,
    AuditLogConsumer,
    EmailNotificationConsumer,
    PaymentEventType,
    RefundRequestsConsumer,
    TopicRouter,
    build_routing_key,
)
from .work_queue import (
    FRAUD_CHECK_QUEUE,
    PAYMENT_PROCESSING_QUEUE,
    FraudCheckConsumer,
    PaymentProcessingConsumer,
    WorkQueue,
)

__all__ = [
    "DLQ_NAME",
    "FRAUD_CHECK_QUEUE",
    "PAYMENTS_QUEUE",
    "PAYMENT_EVENTS_EXCHANGE",
    "PAYMENT_PROCESSING_QUEUE",
    "RPC_QUEUE",
    "ApprovedPaymentsConsumer",
    "AuditLogConsumer",
    "BasicPaymentConsumer",
    "BasicQueue",
    "DeadLetterConsumer",
    "DeadLetterEntry",
    "DeadLetterQueue",
    "EmailNotificationConsumer",
    "FraudCheckConsumer",
    "PaymentEventType",
    "PaymentProcessingConsumer",
    "RefundRequestsConsumer",
    "RetryPolicy",
    "RpcClient",
    "RpcServer",
    "TopicRouter",
    "WorkQueue",
    "build_routing_key",
    "parse_rpc_request",
]
