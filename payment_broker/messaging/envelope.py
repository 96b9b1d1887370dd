"""
Wire-level value objects: envelopes, queue/exchange specs and bindings.
"""
import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel

from .exceptions import PoisonMessageError

JSON_CONTENT_TYPE = "application/json"


class DeliveryMode(IntEnum):
    """AMQP delivery mode."""

    TRANSIENT = 1
    PERSISTENT = 2


class ExchangeType(str, Enum):
    """Supported exchange routing algorithms."""

    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"


@dataclass(frozen=True)
class Envelope:
    """
    The unit on the wire.

    Attributes:
        body: Serialized payload (JSON)
        routing_key: Routing key, meaningful for exchange publishes
        delivery_mode: Transient or persistent
        correlation_id: Links an RPC request with its reply
        reply_to: Queue the RPC reply must be published to
        content_type: MIME type of the body
        headers: Free-form AMQP headers
    """

    body: bytes
    routing_key: str = ""
    delivery_mode: DeliveryMode = DeliveryMode.TRANSIENT
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    content_type: str = JSON_CONTENT_TYPE
    headers: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(
        cls,
        payload: Union[BaseModel, Mapping[str, Any]],
        **kwargs: Any,
    ) -> "Envelope":
        """
        Serialize a payload into an envelope.

        Pydantic models are dumped by alias so the wire keeps camelCase names.
        """
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        else:
            data = dict(payload)
        return cls(body=json.dumps(data, default=str).encode("utf-8"), **kwargs)

    @property
    def persistent(self) -> bool:
        return self.delivery_mode is DeliveryMode.PERSISTENT

    def text(self) -> str:
        """Body as text, with undecodable bytes replaced."""
        return self.body.decode("utf-8", errors="replace")

    def decode(self) -> Dict[str, Any]:
        """
        Deserialize the body into a JSON object.

        Raises:
            PoisonMessageError: If the body is not a JSON object
        """
        try:
            data = json.loads(self.body)
        except (UnicodeDecodeError, ValueError) as e:
            raise PoisonMessageError(f"Malformed payload: {e}") from e
        if not isinstance(data, dict):
            raise PoisonMessageError(
                f"Malformed payload: expected a JSON object, got {type(data).__name__}"
            )
        return data


@dataclass(frozen=True)
class QueueSpec:
    """Declarative description of a queue."""

    name: str
    durable: bool = False
    message_ttl_ms: Optional[int] = None
    exclusive: bool = False
    auto_delete: bool = False

    @property
    def arguments(self) -> Dict[str, Any]:
        """Broker-side queue arguments."""
        if self.message_ttl_ms is None:
            return {}
        return {"x-message-ttl": self.message_ttl_ms}


@dataclass(frozen=True)
class ExchangeSpec:
    """Declarative description of an exchange."""

    name: str
    type: ExchangeType = ExchangeType.TOPIC
    durable: bool = True


@dataclass(frozen=True)
class Binding:
    """An (exchange, queue, pattern) triple."""

    exchange: str
    queue: str
    pattern: str
