"""Payment messaging over RabbitMQ: basic, work, topic, RPC and dead-letter queues."""

__version__ = "0.1.0"
