"""Write-ahead archival of relayed messages.

Every archive offers the same small capability, `push` and `get` keyed by message id. The relay
treats archives as a diagnostic aid: `store` pushes to each configured archive and a failing
archive never prevents a message from being relayed.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol
from urllib.parse import quote

from pydantic import ValidationError
from redis.asyncio import Redis

from .envelope import Envelope
from .log import logger
from .metrics import metrics

if TYPE_CHECKING:
    from .config import Settings


class Archive(Protocol):
    name: str

    async def push(self, message_id: str, envelope: Envelope) -> None: ...

    async def get(self, message_id: str) -> Optional[Envelope]: ...

    async def close(self) -> None: ...


@dataclass
class NullArchive:
    "Used when no archive is configured"

    name: str = "null"

    async def push(self, message_id: str, envelope: Envelope) -> None:
        pass

    async def get(self, message_id: str) -> Optional[Envelope]:
        return None

    async def close(self) -> None:
        pass


@dataclass
class RedisArchive:
    """Stores each envelope as a JSON string under `key_prefix + message_id`.

    The client is created on first use so that an unreachable Redis only affects archival.
    """

    redis_url: Optional[str] = None
    redis_client: Optional[Redis] = None
    key_prefix: str = ""
    name: str = "redis"

    def __post_init__(self) -> None:
        if self.redis_client is not None and self.redis_url is not None:
            raise ValueError("You cannot set both redis_client and redis_url")
        if self.redis_client is None and self.redis_url is None:
            raise ValueError("Either redis_client or redis_url is required")

    def _client(self) -> Redis:
        if self.redis_client is None:
            assert self.redis_url is not None
            self.redis_client = Redis.from_url(self.redis_url)
        return self.redis_client

    def _key(self, message_id: str) -> str:
        return f"{self.key_prefix}{message_id}"

    async def push(self, message_id: str, envelope: Envelope) -> None:
        await self._client().set(self._key(message_id), envelope.to_json())

    async def get(self, message_id: str) -> Optional[Envelope]:
        try:
            value = await self._client().get(self._key(message_id))
        except Exception as exc:
            logger.warning(f"Redis get failed for {message_id=}: {exc!r}")
            return None
        if value is None:
            return None
        try:
            return Envelope.model_validate_json(value)
        except ValidationError as exc:
            logger.warning(f"Archived record for {message_id=} is not a valid envelope: {exc}")
            return None

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()


@dataclass
class FileArchive:
    """One file per message, so that large payloads do not end up in a single log.

    Files are named `msg-<message_id>.txt` inside `path`; the id is percent-quoted so that it
    always stays a single path component.
    """

    path: Path = field(default_factory=lambda: Path("/logs/events"))
    name: str = "file"

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    def file_for(self, message_id: str) -> Path:
        return self.path / f"msg-{quote(message_id, safe='-_.')}.txt"

    def _write(self, message_id: str, data: str) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self.file_for(message_id).write_text(data, encoding="utf-8")

    def _read(self, message_id: str) -> str:
        return self.file_for(message_id).read_text(encoding="utf-8")

    async def push(self, message_id: str, envelope: Envelope) -> None:
        await asyncio.to_thread(self._write, message_id, envelope.to_json())

    async def get(self, message_id: str) -> Optional[Envelope]:
        try:
            data = await asyncio.to_thread(self._read, message_id)
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning(f"Unable to read archive file for {message_id=}: {exc!r}")
            return None
        try:
            return Envelope.model_validate_json(data)
        except ValidationError as exc:
            logger.warning(f"Archive file for {message_id=} is not a valid envelope: {exc}")
            return None

    async def close(self) -> None:
        pass


def build_archives(settings: "Settings") -> list[Archive]:
    archives: list[Archive] = []
    if settings.redis_url:
        archives.append(RedisArchive(redis_url=settings.redis_url))
    else:
        logger.warning("Redis archive is disabled")
    if settings.enable_file_archive:
        archives.append(FileArchive(path=Path(settings.file_archive_path)))
    else:
        logger.warning("File archive is disabled")
    if not archives:
        archives.append(NullArchive())
    return archives


async def store(archives: Sequence[Archive], message_id: str, envelope: Envelope) -> str:
    "Push `envelope` to every archive, logging (never raising) failures"

    for archive in archives:
        try:
            await archive.push(message_id, envelope)
        except Exception as exc:
            metrics.archive_failures.labels(archive=archive.name).inc()
            logger.error(
                f"Failed to archive message {message_id=} in {archive.name} archive: "
                f"{type(exc).__name__}: {exc}",
                exc_info=True,
            )
    return message_id


async def close_archives(archives: Sequence[Archive]) -> None:
    for archive in archives:
        try:
            await archive.close()
        except Exception as exc:
            logger.error(f"Unable to close {archive.name} archive: {exc!r}")
