"""
Prometheus metrics for broker monitoring.

Tracks:
- Published messages and publish failures
- Reconnects and link state
- Consumer outcomes per queue (ack, requeue, reject, dead letter)
- Message processing duration
- RPC requests and retry attempts
- Dead-lettered messages
"""
from prometheus_client import Counter, Gauge, Histogram

# Publisher metrics
messages_published_total = Counter(
    "broker_messages_published_total",
    "Total messages published to the broker",
    ["target", "kind"],  # kind: queue, exchange
)

publish_failures_total = Counter(
    "broker_publish_failures_total",
    "Total publishes surfaced to callers as delivery failures",
    ["target"],
)

# Connection metrics
reconnects_total = Counter(
    "broker_reconnects_total",
    "Total reconnects triggered by channel errors",
)

connection_state = Gauge(
    "broker_connection_state",
    "Broker link state (0=disconnected, 1=connecting, 2=open, 3=closing)",
)

# Consumer metrics
messages_consumed_total = Counter(
    "broker_messages_consumed_total",
    "Total deliveries settled by consumers",
    ["queue", "outcome"],  # ack, requeue, reject, dead_letter
)

message_processing_seconds = Histogram(
    "broker_message_processing_seconds",
    "Time spent handling a single delivery",
    ["queue"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# RPC metrics
rpc_requests_total = Counter(
    "rpc_requests_total",
    "Total RPC requests handled",
    ["method", "status"],  # success, error, unknown
)

rpc_retry_attempts_total = Counter(
    "rpc_retry_attempts_total",
    "Total retry attempts made by processPaymentWithRetry",
)

# Dead letter metrics
dead_letters_total = Counter(
    "dead_letters_total",
    "Total messages deposited to the dead-letter queue",
    ["source"],
)
