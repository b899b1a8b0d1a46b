from typing import Any, Callable, Coroutine, Optional

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
    ConsumerTag,
)
from aiormq.exceptions import ChannelAccessRefused, ChannelNotFoundEntity
from yarl import URL

from .exceptions import BrokerConnectionError, SourceQueueInUse, SourceQueueNotFound
from .log import logger

SOURCE = "source"
DESTINATION = "destination"

ReturnCallback = Callable[[Any, AbstractIncomingMessage], Any]


def describe_url(url: str) -> str:
    "`host:port` of an AMQP url, without credentials"
    parsed = URL(url)
    port = parsed.port or (5671 if parsed.scheme == "amqps" else 5672)
    return f"{parsed.host}:{port}"


class ConnectionRegistry:
    """Broker connections owned by a runner, keyed by role.

    A connection is registered as soon as it is established, so that `close_all` also cleans up
    after a setup that failed halfway.
    """

    def __init__(self) -> None:
        self._connections: dict[str, AbstractConnection] = {}

    def __contains__(self, role: str) -> bool:
        return role in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, role: str, connection: AbstractConnection) -> None:
        self._connections[role] = connection

    def get(self, role: str) -> Optional[AbstractConnection]:
        return self._connections.get(role)

    async def close_all(self) -> None:
        for role, connection in list(self._connections.items()):
            if not connection.is_closed:
                try:
                    await connection.close()
                    logger.warning(f"Closed {role} connection")
                except Exception as exc:
                    logger.error(f"Unable to close {role} connection: {exc!r}")
            del self._connections[role]


async def _connect(registry: ConnectionRegistry, role: str, url: str) -> AbstractConnection:
    address = describe_url(url)
    logger.info(f"Connecting to {role} broker at {address}")
    try:
        connection = await aio_pika.connect(url)
    except Exception as exc:
        raise BrokerConnectionError(role, address, f"{type(exc).__name__}: {exc}") from exc
    registry.register(role, connection)
    return connection


async def connect_source(
    registry: ConnectionRegistry,
    url: str,
    queue_name: str,
    channel_number: Optional[int] = None,
    prefetch_count: Optional[int] = None,
) -> tuple[AbstractConnection, AbstractChannel, AbstractQueue]:
    """Connect to the source broker and attach to an existing queue.

    The queue is declared passively: it is never created, and a missing queue raises
    `SourceQueueNotFound`.
    """

    connection = await _connect(registry, SOURCE, url)
    channel = await connection.channel(channel_number=channel_number)
    if prefetch_count is not None:
        await channel.set_qos(prefetch_count=prefetch_count)
    try:
        queue = await channel.declare_queue(queue_name, passive=True)
    except ChannelNotFoundEntity as exc:
        raise SourceQueueNotFound(queue_name) from exc
    logger.info(f"Attached to source queue {queue_name!r}")
    return connection, channel, queue


async def subscribe(
    queue: AbstractQueue,
    callback: Callable[[AbstractIncomingMessage], Coroutine[Any, Any, None]],
) -> ConsumerTag:
    "Consume `queue` exclusively with manual acknowledgements"

    try:
        consumer_tag = await queue.consume(callback, no_ack=False, exclusive=True)
    except ChannelAccessRefused as exc:
        raise SourceQueueInUse(queue.name) from exc
    logger.info(f"Consuming source queue {queue.name!r} with {consumer_tag=}")
    return consumer_tag


async def connect_destination(
    registry: ConnectionRegistry,
    url: str,
    on_return: ReturnCallback,
    destination_queue: Optional[str] = None,
) -> tuple[AbstractConnection, AbstractChannel]:
    """Connect to the destination broker and open the channel every republish goes through.

    The channel has publisher confirms enabled, and messages the broker cannot route are handed to
    `on_return` instead of failing the publish.
    """

    connection = await _connect(registry, DESTINATION, url)
    channel = await connection.channel(publisher_confirms=True, on_return_raises=False)
    channel.return_callbacks.add(on_return)
    if destination_queue:
        await channel.declare_queue(destination_queue, durable=True)
        logger.info(f"Publishing directly to destination queue {destination_queue!r}")
    else:
        logger.info("Publishing with the original exchange and routing key")
    return connection, channel
