from collections.abc import Mapping
from typing import Any, Literal, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .exceptions import ConfigurationError

LogLevel = Literal["debug", "info", "warning", "error", "critical"]

# Environment variable -> Settings field
ENVIRONMENT = {
    "AMQP_SOURCE_URL": "source_url",
    "AMQP_SOURCE_CHANNEL": "source_channel",
    "AMQP_SOURCE_QUEUE": "source_queue",
    "AMQP_DESTINATION_URL": "destination_url",
    "AMQP_DESTINATION_QUEUE": "destination_queue",
    "AMQP_PREFETCH_COUNT": "prefetch_count",
    "REDIS_URL": "redis_url",
    "ENABLE_FILE_LOGGER": "enable_file_archive",
    "FILE_LOGS_PATH": "file_archive_path",
    "RETRY_ON_FAIL": "retry_on_fail",
    "RETRY_DELAY": "retry_delay",
    "RETRY_LIMIT": "retry_limit",
    "PRINT_RETURNED_BODY": "print_returned_body",
    "RELAY_ORDERED": "ordered",
    "ENABLE_METRICS": "enable_metrics",
    "METRICS_PORT": "metrics_port",
    "LOG_LEVEL": "log_level",
}

_LOG_LEVEL_ALIASES = {"warn": "warning", "fatal": "critical", "trace": "debug"}


class Settings(BaseModel):
    source_url: str
    source_queue: str
    destination_url: str
    source_channel: Optional[int] = None
    destination_queue: Optional[str] = None
    prefetch_count: Optional[int] = None
    redis_url: Optional[str] = None
    enable_file_archive: bool = True
    file_archive_path: str = "/logs/events"
    retry_on_fail: bool = True
    retry_delay: float = 2.0
    retry_limit: Optional[int] = None
    print_returned_body: bool = False
    ordered: bool = False
    enable_metrics: bool = True
    metrics_port: Optional[int] = None
    log_level: LogLevel = "info"

    @field_validator(
        "source_channel",
        "destination_queue",
        "prefetch_count",
        "redis_url",
        "retry_limit",
        "metrics_port",
        mode="before",
    )
    @classmethod
    def _empty_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return _LOG_LEVEL_ALIASES.get(value, value)
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str], **overrides: Any) -> "Settings":
        """Build settings from environment variables, `overrides` taking precedence.

        Raises `ConfigurationError` naming the offending variable when a required variable is
        missing or a value cannot be parsed.
        """
        values: dict[str, Any] = {
            field_name: environ[env_name]
            for env_name, field_name in ENVIRONMENT.items()
            if env_name in environ
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        try:
            return cls(**values)
        except ValidationError as exc:
            field_to_env = {field_name: env_name for env_name, field_name in ENVIRONMENT.items()}
            problems = []
            for error in exc.errors():
                field_name = str(error["loc"][0]) if error["loc"] else ""
                env_name = field_to_env.get(field_name, field_name)
                if error["type"] == "missing":
                    problems.append(f"{env_name} is required")
                else:
                    problems.append(f"{env_name}: {error['msg']}")
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems)) from exc
