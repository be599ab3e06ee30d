"""Configuration for the image sync engine."""

from imagesync.config.settings import (
    DEFAULT_STORAGE_ROOT,
    LogLevel,
    SyncConfiguration,
    validate_config,
)

__all__ = [
    "DEFAULT_STORAGE_ROOT",
    "LogLevel",
    "SyncConfiguration",
    "validate_config",
]
