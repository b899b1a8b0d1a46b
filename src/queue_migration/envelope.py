import datetime
import time
from typing import Any, Optional

from aio_pika.abc import AbstractIncomingMessage
from aio_pika.exceptions import ChannelInvalidStateError
from pydantic import BaseModel, ConfigDict, Field, field_serializer


def generate_id() -> str:
    """Id for messages that arrive without a `message_id` property."""
    return str(time.time_ns())


def _channel_number(message: AbstractIncomingMessage) -> Optional[int]:
    try:
        return message.channel.number
    except (ChannelInvalidStateError, AttributeError):
        return None


class MessageProperties(BaseModel):
    """AMQP basic properties carried over to the destination, in aio_pika's naming.

    Typed so that an archived envelope reads back with the same values it was written with.
    """

    model_config = ConfigDict(frozen=True)

    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    headers: Optional[dict[str, Any]] = None
    delivery_mode: Optional[int] = None
    priority: Optional[int] = None
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    expiration: Optional[float] = None
    message_id: Optional[str] = None
    timestamp: Optional[datetime.datetime] = None
    type: Optional[str] = None
    user_id: Optional[str] = None
    app_id: Optional[str] = None

    @classmethod
    def from_message(cls, message: AbstractIncomingMessage) -> "MessageProperties":
        values = {}
        for name in cls.model_fields:
            value = getattr(message, name, None)
            if value is None or (name == "headers" and not value):
                continue
            values[name] = value
        return cls(**values)

    def as_kwargs(self) -> dict[str, Any]:
        "Keyword arguments for `aio_pika.Message`, unset properties left out"
        return self.model_dump(exclude_none=True)


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    channel_id: Optional[int] = Field(default=None, alias="channel")
    exchange: str = ""
    routing_key: str = Field(default="", alias="routingKey")
    properties: MessageProperties = Field(default_factory=MessageProperties)
    body: bytes = b""

    @classmethod
    def from_message(cls, message: AbstractIncomingMessage) -> "Envelope":
        return cls(
            channel_id=_channel_number(message),
            exchange=message.exchange or "",
            routing_key=message.routing_key or "",
            properties=MessageProperties.from_message(message),
            body=message.body,
        )

    @field_serializer("properties", when_used="json")
    def _serialize_properties(self, properties: MessageProperties) -> dict[str, Any]:
        return properties.model_dump(mode="json", exclude_none=True)

    @field_serializer("body", when_used="json")
    def _serialize_body(self, body: bytes) -> str:
        return body.decode("utf-8", errors="replace")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def log_fields(self, with_body: bool = False) -> str:
        "Routing metadata as `key=value` pairs, the body only on request"
        channel_id, exchange, routing_key = self.channel_id, self.exchange, self.routing_key
        properties = self.properties.as_kwargs()
        fields = f"{channel_id=}, {exchange=}, {routing_key=}, {properties=}"
        if with_body:
            body = self.body.decode("utf-8", errors="replace")
            fields += f", {body=}"
        return fields
