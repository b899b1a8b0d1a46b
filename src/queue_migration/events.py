import inspect
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar, Union

from aio_pika.abc import AbstractIncomingMessage

from .envelope import Envelope
from .log import logger

PublishedCallback = Callable[[str, str, Envelope], Union[None, Awaitable[None]]]
ReturnedCallback = Callable[[AbstractIncomingMessage], Union[None, Awaitable[None]]]

C = TypeVar("C", bound=Callable[..., Any])


@dataclass
class RelayEvents:
    """Observers of relay outcomes.

    `published` callbacks receive `(destination_host, message_id, envelope)` once a message has
    been published on the destination and acknowledged on the source. `returned` callbacks receive
    the message the destination broker could not route. Callbacks may be plain functions or
    coroutine functions; an observer that raises is logged and otherwise ignored.
    """

    published: list[PublishedCallback] = field(default_factory=list)
    returned: list[ReturnedCallback] = field(default_factory=list)

    def on_published(self, callback: C) -> C:
        self.published.append(callback)
        return callback

    def on_returned(self, callback: C) -> C:
        self.returned.append(callback)
        return callback

    async def emit_published(
        self, destination_host: str, message_id: str, envelope: Envelope
    ) -> None:
        await self._emit("published", self.published, destination_host, message_id, envelope)

    async def emit_returned(self, message: AbstractIncomingMessage) -> None:
        await self._emit("returned", self.returned, message)

    @staticmethod
    async def _emit(event: str, callbacks: list[Any], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    f"Observer {callback!r} of {event!r} failed: {type(exc).__name__}: {exc}",
                    exc_info=True,
                )
