import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from aio_pika.abc import AbstractIncomingMessage

from .archive import Archive, store
from .envelope import Envelope, generate_id
from .events import RelayEvents
from .log import logger
from .metrics import metrics

RETURNED_PREFIX = "returned-"


@dataclass
class ReturnHandler:
    """Handles mandatory publishes the destination broker could not route.

    Returned messages are archived under a `returned-` prefixed id and reported to observers. They
    are not retried: fixing the destination's routing is left to the operator.
    """

    archives: Sequence[Archive] = ()
    events: RelayEvents = field(default_factory=RelayEvents)
    print_returned_body: bool = False
    _tasks: set[asyncio.Task[None]] = field(default_factory=set)

    def __call__(self, channel: Any, message: AbstractIncomingMessage) -> None:
        "Return callback of the destination channel"
        task = asyncio.create_task(self.handle(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle(self, message: AbstractIncomingMessage) -> str:
        envelope = Envelope.from_message(message)
        message_id = message.message_id or generate_id()
        archive_id = f"{RETURNED_PREFIX}{message_id}"

        await store(self.archives, archive_id, envelope)
        metrics.messages_returned.labels(exchange=envelope.exchange).inc()
        await self.events.emit_returned(message)

        logger.warning(
            f"Message {message_id} returned by the destination broker: "
            f"{envelope.log_fields(with_body=self.print_returned_body)}"
        )
        return archive_id

    async def wait(self) -> None:
        if self._tasks:
            await asyncio.wait(set(self._tasks))
