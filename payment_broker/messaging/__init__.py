"""Broker integration layer: transport, connection management and consumers."""
from .connection import BrokerConnectionManager, LinkState
from .consumer import QueueConsumer
from .envelope import (
    Binding,
    DeliveryMode,
    Envelope,
    ExchangeSpec,
    ExchangeType,
    QueueSpec,
)
from .exceptions import (
    BrokerError,
    ChannelClosedError,
    ChannelNotReadyError,
    ConfigurationError,
    ConnectionLostError,
    ConsumerStartupError,
    DeclarationMismatchError,
    DeliveryError,
    DeliveryStateError,
    EntityNotFoundError,
    PoisonMessageError,
    RpcTimeoutError,
    TransportError,
    is_channel_error,
)
from .memory import InMemoryBroker
from .routing import topic_matches
from .transport import BrokerChannel, BrokerConnection, ConsumerStream, Delivery

__all__ = [
    "Binding",
    "BrokerChannel",
    "BrokerConnection",
    "BrokerConnectionManager",
    "BrokerError",
    "ChannelClosedError",
    "ChannelNotReadyError",
    "ConfigurationError",
    "ConnectionLostError",
    "ConsumerStartupError",
    "ConsumerStream",
    "DeclarationMismatchError",
    "Delivery",
    "DeliveryError",
    "DeliveryMode",
    "DeliveryStateError",
    "EntityNotFoundError",
    "Envelope",
    "ExchangeSpec",
    "ExchangeType",
    "InMemoryBroker",
    "LinkState",
    "PoisonMessageError",
    "QueueConsumer",
    "QueueSpec",
    "RpcTimeoutError",
    "TransportError",
    "is_channel_error",
    "topic_matches",
]
