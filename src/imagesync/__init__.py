"""
Device Image Sync

Background synchronization of images captured by field sensor devices.

The engine:
- Polls a remote source for images newer than the last watermark
- Downloads them with bounded concurrency into <storage_root>/<device_id>/
- Records each image in a metadata store
- Retries failures within a per-item budget

Quick Start:
    from imagesync import EngineRegistry, validate_config
    from imagesync.storage import SQLiteMetadataStore, SQLiteSettingsStore

    registry = EngineRegistry(
        settings_store=SQLiteSettingsStore("~/.imagesync/settings.db"),
        metadata_store=SQLiteMetadataStore("~/.imagesync/metadata.db"),
    )
    engine = registry.get(config={"sourceEndpoint": "https://example.com/images"})
    await engine.start()
    ...
    await engine.stop()
"""

__version__ = "0.1.0"

# Configuration
from imagesync.config import LogLevel, SyncConfiguration, validate_config

# Control
from imagesync.control import BackgroundFetchResult, BackgroundSyncTask, EngineRegistry

# Errors
from imagesync.errors import (
    AlreadyRunningError,
    AuthenticationError,
    ConfigValidationError,
    EngineNotInitializedError,
    ImageSyncError,
    MetadataWriteError,
    NetworkError,
    NotRunningError,
    ProtocolError,
    StorageError,
)

# Engine
from imagesync.sync import CycleReport, EngineState, ImageItem, SyncEngine, SyncStatus

__all__ = [
    "__version__",
    # Configuration
    "LogLevel",
    "SyncConfiguration",
    "validate_config",
    # Engine
    "SyncEngine",
    "EngineState",
    "SyncStatus",
    "CycleReport",
    "ImageItem",
    # Control
    "EngineRegistry",
    "BackgroundSyncTask",
    "BackgroundFetchResult",
    # Errors
    "ImageSyncError",
    "ConfigValidationError",
    "NetworkError",
    "AuthenticationError",
    "ProtocolError",
    "StorageError",
    "MetadataWriteError",
    "AlreadyRunningError",
    "NotRunningError",
    "EngineNotInitializedError",
]
