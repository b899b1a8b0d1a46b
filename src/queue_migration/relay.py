import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage

from .archive import Archive, store
from .envelope import Envelope, generate_id
from .events import RelayEvents
from .log import logger
from .metrics import metrics


@dataclass
class Relay:
    """Republishes every source delivery on the destination channel.

    A delivery is acknowledged on the source only once the destination broker has confirmed the
    publish; otherwise it is negatively acknowledged and the source broker redelivers it.
    """

    channel: AbstractChannel
    destination_host: str
    source_queue: str = ""
    destination_queue: Optional[str] = None
    archives: Sequence[Archive] = ()
    events: RelayEvents = field(default_factory=RelayEvents)
    # Process one delivery at a time, in delivery order
    ordered: bool = False
    _tasks: set[asyncio.Task[None]] = field(default_factory=set)
    _ordered_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _reopen_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def on_message(self, message: AbstractIncomingMessage) -> None:
        "Consumer callback: handle each delivery in its own task"
        metrics.messages_received.labels(queue=self.source_queue).inc()
        task = asyncio.create_task(self._process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, message: AbstractIncomingMessage) -> None:
        if self.ordered:
            async with self._ordered_lock:
                await self.handle(message)
        else:
            await self.handle(message)

    async def handle(self, message: AbstractIncomingMessage) -> bool:
        """Archive, republish and settle a single delivery.

        Returns whether the message made it to the destination.
        """
        envelope = Envelope.from_message(message)
        message_id = message.message_id or generate_id()
        await store(self.archives, message_id, envelope)
        logger.info(f"Received message {message_id}")

        try:
            await self.publish(envelope)
        except Exception as exc:
            error_type = type(exc).__name__
            metrics.relay_failures.labels(error_type=error_type).inc()
            logger.error(
                f"Unable to write message {message_id} to destination, returning it to the "
                f"source queue: {envelope.log_fields()}, error={error_type}: {exc}"
            )
            try:
                await message.nack(requeue=True)
            except Exception as nack_exc:
                logger.error(f"Failed to nack message {message_id} on the source: {nack_exc!r}")
            return False

        try:
            await message.ack()
        except Exception as exc:
            # The source broker redelivers unacknowledged messages once the channel is gone
            logger.error(
                f"Published message {message_id} but failed to ack it on the source: {exc!r}"
            )
            return True

        logger.info(f"Successfully sent message {message_id}")
        metrics.messages_relayed.labels(destination=self.destination_host).inc()
        await self.events.emit_published(self.destination_host, message_id, envelope)
        return True

    async def publish(self, envelope: Envelope) -> None:
        await self._ensure_channel()
        message = aio_pika.Message(envelope.body, **envelope.properties.as_kwargs())
        if self.destination_queue:
            await self.channel.default_exchange.publish(
                message, routing_key=self.destination_queue
            )
        else:
            exchange = await self._exchange(envelope.exchange)
            await exchange.publish(message, routing_key=envelope.routing_key, mandatory=True)

    async def _exchange(self, name: str) -> AbstractExchange:
        if not name:
            return self.channel.default_exchange
        return await self.channel.get_exchange(name, ensure=False)

    async def _ensure_channel(self) -> None:
        # A publish to a missing exchange makes the broker close the channel
        async with self._reopen_lock:
            if self.channel.is_closed:
                logger.warning("Destination channel is closed, reopening it")
                await self.channel.reopen()

    async def wait(self) -> None:
        "Wait for the deliveries currently being handled"
        if self._tasks:
            await asyncio.wait(set(self._tasks))
