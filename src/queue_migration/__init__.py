from .archive import Archive, FileArchive, NullArchive, RedisArchive, build_archives
from .config import Settings
from .connections import ConnectionRegistry
from .envelope import Envelope, MessageProperties, generate_id
from .events import RelayEvents
from .exceptions import (
    BrokerConnectionError,
    ConfigurationError,
    RelayError,
    SourceQueueInUse,
    SourceQueueNotFound,
)
from .relay import Relay
from .returns import ReturnHandler
from .runner import RelayState, Runner

__all__ = [
    "Archive",
    "BrokerConnectionError",
    "ConfigurationError",
    "ConnectionRegistry",
    "Envelope",
    "FileArchive",
    "MessageProperties",
    "NullArchive",
    "RedisArchive",
    "Relay",
    "RelayError",
    "RelayEvents",
    "RelayState",
    "ReturnHandler",
    "Runner",
    "Settings",
    "SourceQueueInUse",
    "SourceQueueNotFound",
    "build_archives",
    "generate_id",
]
