"""
Sync configuration model.

A validated, immutable set of settings. Reconfiguration always builds a new
instance from the old values plus the changed fields, so a cycle that
captured a configuration keeps seeing the same values.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from imagesync.errors import ConfigValidationError

DEFAULT_STORAGE_ROOT = Path("~/.imagesync/images").expanduser()


class LogLevel(str, Enum):
    """Verbosity of the sync engine's logger."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    def to_logging(self) -> int:
        """Map to a stdlib logging level."""
        return {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.WARN: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
        }[self]


class SyncConfiguration(BaseModel):
    """
    Settings for one sync engine.

    Field names are snake_case; the camelCase names used by the mobile app
    (``pollingIntervalMs``, ``maxConcurrentDownloads``, ...) are accepted as
    aliases.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    polling_interval_ms: int = Field(default=300_000, ge=1000)
    source_endpoint: str
    max_concurrent_downloads: int = Field(default=3, ge=1, le=10)
    accepted_file_types: frozenset[str] = Field(
        default=frozenset({"jpg", "jpeg", "png"})
    )
    storage_root: Path = DEFAULT_STORAGE_ROOT
    auth_token: SecretStr | None = None
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_ms: int = Field(default=5000, ge=1000)
    log_level: LogLevel = LogLevel.INFO

    @field_validator("source_endpoint")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("must be an absolute http(s) URL")
        return value

    @field_validator("accepted_file_types", mode="before")
    @classmethod
    def _normalize_file_types(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set, frozenset)):
            normalized = set()
            for ext in value:
                if not isinstance(ext, str):
                    raise ValueError("file types must be strings")
                ext = ext.strip().lstrip(".").lower()
                if not ext:
                    raise ValueError("file types must not be empty")
                normalized.add(ext)
            return frozenset(normalized)
        return value

    @field_validator("storage_root")
    @classmethod
    def _absolute_path(cls, value: Path) -> Path:
        value = value.expanduser()
        if not value.is_absolute():
            raise ValueError("must be an absolute path")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _lower_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.lower()
            if value == "warning":
                return LogLevel.WARN
        return value

    @property
    def polling_interval(self) -> float:
        """Polling interval in seconds."""
        return self.polling_interval_ms / 1000

    @property
    def retry_delay(self) -> float:
        """Retry delay in seconds."""
        return self.retry_delay_ms / 1000

    def auth_headers(self) -> dict[str, str]:
        """Authorization header for the source, if a token is configured."""
        if self.auth_token is None:
            return {}
        return {"Authorization": f"Bearer {self.auth_token.get_secret_value()}"}

    def merged(self, partial: Mapping[str, Any]) -> SyncConfiguration:
        """Return a new validated configuration with ``partial`` applied."""
        values: dict[str, Any] = dict(self)
        values.update(_normalize_keys(partial))
        return validate_config(values)

    def public_dict(self) -> dict[str, Any]:
        """Plain values for display; the token is masked."""
        return {
            "polling_interval_ms": self.polling_interval_ms,
            "source_endpoint": self.source_endpoint,
            "max_concurrent_downloads": self.max_concurrent_downloads,
            "accepted_file_types": ",".join(sorted(self.accepted_file_types)),
            "storage_root": str(self.storage_root),
            "auth_token": "********" if self.auth_token else None,
            "retry_attempts": self.retry_attempts,
            "retry_delay_ms": self.retry_delay_ms,
            "log_level": self.log_level.value,
        }

    @classmethod
    def from_env(
        cls,
        prefix: str = "IMAGESYNC_",
        env_file: str | Path | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> SyncConfiguration:
        """
        Build a configuration from environment variables (and a .env file).

        Variables are named after the fields, e.g. ``IMAGESYNC_SOURCE_ENDPOINT``;
        ``overrides`` win over the environment.
        """
        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv()

        raw: dict[str, Any] = {}
        for name in cls.model_fields:
            value = os.environ.get(f"{prefix}{name.upper()}")
            if value is not None and value != "":
                raw[name] = value
        raw.update(_normalize_keys(overrides or {}))
        return validate_config(raw)


_ALIASES = {to_camel(name): name for name in SyncConfiguration.model_fields}


def _normalize_keys(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Map camelCase keys to field names so merges never carry both."""
    return {_ALIASES.get(key, key): value for key, value in raw.items()}


def validate_config(raw: Mapping[str, Any]) -> SyncConfiguration:
    """
    Validate raw settings into a SyncConfiguration.

    Defaults fill only absent fields. The first violated field is named in
    the raised ConfigValidationError.
    """
    try:
        return SyncConfiguration.model_validate(_normalize_keys(raw))
    except ValidationError as e:
        first = e.errors()[0]
        loc = first.get("loc") or ("configuration",)
        field = _ALIASES.get(str(loc[0]), str(loc[0]))
        raise ConfigValidationError(field, first.get("msg", "invalid value")) from e
