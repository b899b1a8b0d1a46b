import asyncio
import contextlib
import enum
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional

from .archive import Archive, NullArchive, build_archives, close_archives
from .config import Settings
from .connections import (
    ConnectionRegistry,
    connect_destination,
    connect_source,
    describe_url,
    subscribe,
)
from .events import RelayEvents
from .log import logger
from .metrics import metrics
from .relay import Relay
from .returns import ReturnHandler

# Fixed delay between connection attempts (seconds)
RETRY_DELAY_SECONDS = 2.0


class RelayState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    CLOSING = "closing"
    RETRYING = "retrying"


@dataclass
class Runner:
    """Connects both brokers, starts relaying and tears everything down again.

    A failed start closes every connection opened so far. With `retry_on_fail` another attempt is
    scheduled `retry_delay` seconds later and `run` returns normally; attempts are unbounded unless
    `retry_limit` is set. Without it, the error is raised to the caller.
    """

    source_url: str
    source_queue: str
    destination_url: str
    source_channel: Optional[int] = None
    destination_queue: Optional[str] = None
    prefetch_count: Optional[int] = None
    archives: Sequence[Archive] = field(default_factory=lambda: [NullArchive()])
    events: RelayEvents = field(default_factory=RelayEvents)
    retry_on_fail: bool = True
    retry_delay: float = RETRY_DELAY_SECONDS
    retry_limit: Optional[int] = None
    print_returned_body: bool = False
    ordered: bool = False
    enable_metrics: bool = True
    registry: ConnectionRegistry = field(default_factory=ConnectionRegistry)
    state: RelayState = RelayState.IDLE
    relay: Optional[Relay] = None
    return_handler: Optional[ReturnHandler] = None
    _attempts: int = 0
    _retry_task: Optional[asyncio.Task[None]] = None
    _starting: Optional[asyncio.Task[None]] = None
    _failed: Optional[asyncio.Future[None]] = None

    def __post_init__(self) -> None:
        metrics.enable_metrics(self.enable_metrics)
        if self.retry_limit is not None and self.retry_limit < 1:
            raise ValueError("retry_limit must be at least 1")
        if self.return_handler is None:
            self.return_handler = ReturnHandler(
                archives=self.archives,
                events=self.events,
                print_returned_body=self.print_returned_body,
            )

    @classmethod
    def from_settings(cls, settings: Settings, events: Optional[RelayEvents] = None) -> "Runner":
        return cls(
            source_url=settings.source_url,
            source_queue=settings.source_queue,
            destination_url=settings.destination_url,
            source_channel=settings.source_channel,
            destination_queue=settings.destination_queue,
            prefetch_count=settings.prefetch_count,
            archives=build_archives(settings),
            events=events if events is not None else RelayEvents(),
            retry_on_fail=settings.retry_on_fail,
            retry_delay=settings.retry_delay,
            retry_limit=settings.retry_limit,
            print_returned_body=settings.print_returned_body,
            ordered=settings.ordered,
            enable_metrics=settings.enable_metrics,
        )

    async def run(self) -> None:
        if self._failed is None:
            self._failed = asyncio.get_running_loop().create_future()
        self.state = RelayState.CONNECTING
        self._attempts += 1
        logger.info(
            f"Starting relay (attempt {self._attempts}): source_queue={self.source_queue!r}, "
            f"destination_queue={self.destination_queue!r}"
        )
        self._starting = asyncio.create_task(self._start())
        try:
            await self._starting
        except asyncio.CancelledError:
            if self.state is not RelayState.CLOSING:
                raise
            logger.warning("Connection attempt interrupted by shutdown")
            return
        except Exception as exc:
            metrics.connection_attempts.labels(outcome="failure").inc()
            logger.error(f"Relay failed to start: {type(exc).__name__}: {exc}", exc_info=True)
            self.state = RelayState.CLOSING
            await self.close_connections()

            if self.retry_on_fail and not self._retries_exhausted():
                self.state = RelayState.RETRYING
                logger.info(f"Retrying in {self.retry_delay} seconds.")
                self._retry_task = asyncio.create_task(self._retry())
                return

            self.state = RelayState.IDLE
            if not self._failed.done():
                self._failed.set_exception(exc)
                # Retrieved by `wait_failed`, or by whoever awaits `run`
                self._failed.exception()
            raise

        metrics.connection_attempts.labels(outcome="success").inc()
        self._attempts = 0
        self.state = RelayState.RUNNING
        logger.info("Relay is running")

    def _retries_exhausted(self) -> bool:
        return self.retry_limit is not None and self._attempts >= self.retry_limit

    async def _retry(self) -> None:
        await asyncio.sleep(self.retry_delay)
        try:
            await self.run()
        except Exception:
            logger.critical(f"Giving up after {self._attempts} attempts")

    async def _start(self) -> None:
        assert self.return_handler is not None
        _, _, queue = await connect_source(
            self.registry,
            self.source_url,
            self.source_queue,
            channel_number=self.source_channel,
            prefetch_count=self.prefetch_count,
        )
        _, destination_channel = await connect_destination(
            self.registry,
            self.destination_url,
            self.return_handler,
            destination_queue=self.destination_queue,
        )
        self.relay = Relay(
            channel=destination_channel,
            destination_host=describe_url(self.destination_url),
            source_queue=self.source_queue,
            destination_queue=self.destination_queue,
            archives=self.archives,
            events=self.events,
            ordered=self.ordered,
        )
        await subscribe(queue, self.relay.on_message)

    async def wait_failed(self) -> None:
        """Wait until the relay gives up for good, raising the error that stopped it.

        Only happens when retries are disabled or `retry_limit` is reached.
        """
        if self._failed is None:
            self._failed = asyncio.get_running_loop().create_future()
        await asyncio.shield(self._failed)

    async def close_connections(self) -> None:
        await self.registry.close_all()

    async def start_graceful_shutdown(self) -> None:
        """Stop retrying, interrupt a connection attempt and close every connection and archive.

        Deliveries still in flight are not awaited; unacknowledged ones are redelivered by the
        source broker.
        """
        self.state = RelayState.CLOSING
        for task in (self._retry_task, self._starting):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        await self.close_connections()
        await close_archives(self.archives)
        self.state = RelayState.IDLE
        logger.info("Process has been successfully stopped.")
