"""
Error taxonomy for the image sync engine.

Per-item failures (network, storage, metadata) are carried inside download
outcomes and never abort a cycle. Cycle-level failures (identity, manifest)
abort only the cycle that raised them.
"""

from __future__ import annotations


class ImageSyncError(Exception):
    """Base class for all image sync errors."""


class ConfigValidationError(ImageSyncError):
    """A configuration violated one of its bounds."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"Invalid configuration: {field}: {message}")


class NetworkError(ImageSyncError):
    """Transport failure or unexpected HTTP status."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(NetworkError):
    """The source rejected our credentials (401/403)."""


class ProtocolError(ImageSyncError):
    """The manifest response was not a well-formed list of records."""


class StorageError(ImageSyncError):
    """Local filesystem failure."""


class MetadataWriteError(ImageSyncError):
    """The remote metadata insert failed after a successful download."""


class AlreadyRunningError(ImageSyncError):
    """start() called on a running engine."""


class NotRunningError(ImageSyncError):
    """An operation that needs a running engine was called while stopped."""


class EngineNotInitializedError(ImageSyncError):
    """No engine registered for a purpose and no configuration given."""


class OperationCancelled(ImageSyncError):
    """Raised inside the engine when the run's cancel token fires."""
