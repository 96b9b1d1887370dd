"""Exceptions raised by the broker integration layer."""
from typing import Optional


class BrokerError(Exception):
    """Base exception for broker errors."""

    pass


class ConfigurationError(BrokerError):
    """Raised when the broker cannot be configured (e.g. malformed URL). Fatal at startup."""

    pass


class TransportError(BrokerError):
    """Recoverable network-level failure."""

    pass


class ConnectionLostError(TransportError):
    """Raised when the broker connection is unavailable or was reset."""

    pass


class ChannelClosedError(TransportError):
    """Raised when an operation runs against a closed channel."""

    pass


class DeclarationMismatchError(BrokerError):
    """Raised when a queue or exchange is redeclared with a different specification."""

    pass


class EntityNotFoundError(BrokerError):
    """Raised when a queue or exchange referenced by an operation does not exist."""

    pass


class DeliveryError(BrokerError):
    """Raised to publishers when a message could not be handed to the broker."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """
        Initialize delivery error.

        Args:
            message: Error message
            original_error: Underlying transport or broker error
        """
        super().__init__(message)
        self.original_error = original_error


class DeliveryStateError(BrokerError):
    """Raised when a delivery is settled (acked/nacked) more than once."""

    pass


class ChannelNotReadyError(BrokerError):
    """Raised when the shared channel has not been established yet."""

    pass


class ConsumerStartupError(BrokerError):
    """Raised when a consumer gives up waiting for the shared channel."""

    pass


class PoisonMessageError(BrokerError):
    """Raised when a message body cannot be decoded into the expected payload."""

    pass


class RpcTimeoutError(BrokerError):
    """Raised when no correlated RPC reply arrives in time."""

    pass


def is_channel_error(error: BaseException) -> bool:
    """
    Check whether an error is a channel/connection error worth one reconnect.

    Args:
        error: Raised exception

    Returns:
        bool: True for transport failures
    """
    if isinstance(error, (TransportError, ConnectionResetError)):
        return True
    if isinstance(error, BrokerError):
        return False
    return "closed" in str(error).lower()
