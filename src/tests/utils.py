import asyncio
import datetime
from dataclasses import dataclass, field
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from queue_migration import Envelope, RelayEvents


@dataclass
class FakeChannel:
    number: int = 1


@dataclass
class FakeMessage:
    "Stands in for `aio_pika.IncomingMessage` in unit tests"

    body: bytes = b'{"test": true}'
    exchange: str = ""
    routing_key: str = "test-source"
    channel: Any = field(default_factory=FakeChannel)
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    headers: dict[str, Any] = field(default_factory=dict)
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
    ack: AsyncMock = field(default_factory=lambda: AsyncMock(name="ack"))
    nack: AsyncMock = field(default_factory=lambda: AsyncMock(name="nack"))


def make_channel() -> AsyncMock:
    channel = AsyncMock(name="channel")
    channel.is_closed = False
    channel.return_callbacks = MagicMock(name="return_callbacks")
    channel.get_exchange.return_value = AsyncMock(name="exchange")
    return channel


def make_connection(channel: Optional[AsyncMock] = None) -> AsyncMock:
    connection = AsyncMock(name="connection")
    connection.is_closed = False
    connection.channel.return_value = channel if channel is not None else make_channel()
    return connection


class FailingArchive:
    name = "failing"

    async def push(self, message_id: str, envelope: Envelope) -> None:
        raise ConnectionError("archive is down")

    async def get(self, message_id: str) -> Optional[Envelope]:
        return None

    async def close(self) -> None:
        pass


def next_published(events: RelayEvents) -> "asyncio.Future[tuple[str, str, Envelope]]":
    future: asyncio.Future[tuple[str, str, Envelope]] = asyncio.get_running_loop().create_future()

    def _on_published(host: str, message_id: str, envelope: Envelope) -> None:
        if not future.done():
            future.set_result((host, message_id, envelope))

    events.on_published(_on_published)
    return future


def next_returned(events: RelayEvents) -> "asyncio.Future[AbstractIncomingMessage]":
    future: asyncio.Future[AbstractIncomingMessage] = asyncio.get_running_loop().create_future()

    def _on_returned(message: AbstractIncomingMessage) -> None:
        if not future.done():
            future.set_result(message)

    events.on_returned(_on_returned)
    return future


async def get_messages(
    channel: AbstractChannel, queue_name: str, count: int, timeout: float = 10.0
) -> list[AbstractIncomingMessage]:
    "Poll `queue_name` until `count` messages arrived, acknowledging them"

    queue: AbstractQueue = await channel.get_queue(queue_name, ensure=False)
    messages: list[AbstractIncomingMessage] = []
    deadline = asyncio.get_running_loop().time() + timeout
    while len(messages) < count and asyncio.get_running_loop().time() < deadline:
        message = await queue.get(fail=False)
        if message is None:
            await asyncio.sleep(0.05)
            continue
        await message.ack()
        messages.append(message)
    return messages


async def publish(
    channel: AbstractChannel,
    body: bytes,
    *,
    exchange: str = "",
    routing_key: str = "test-source",
    **properties: Any,
) -> None:
    target = (
        channel.default_exchange if not exchange else await channel.get_exchange(exchange)
    )
    await target.publish(aio_pika.Message(body, **properties), routing_key=routing_key)
