"""
Data types shared by the manifest client, download worker and engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from imagesync.errors import ImageSyncError


class EngineState(Enum):
    """Run state of a sync engine."""

    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class ImageItem:
    """
    One remote image pending transfer.

    Items are never mutated; a retry is a new attempt against the same id.
    """

    id: str
    remote_url: str
    timestamp: str
    device_id: str
    file_name: str
    content_hash: str | None = None


@dataclass(frozen=True)
class ManifestResult:
    """Items returned by one manifest fetch."""

    items: list[ImageItem] = field(default_factory=list)
    dropped: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class DownloadSuccess:
    """The image is on disk and recorded in the metadata store."""

    local_path: Path
    content_hash: str
    skipped: bool = False


@dataclass(frozen=True)
class DownloadFailure:
    """The attempt failed and may be retried."""

    reason: str
    error: ImageSyncError | None = None


@dataclass(frozen=True)
class DownloadCancelled:
    """The attempt was aborted by stop()."""


DownloadOutcome = DownloadSuccess | DownloadFailure | DownloadCancelled


@dataclass
class CycleReport:
    """Summary of one sync cycle."""

    items_found: int = 0
    dropped: int = 0
    downloaded: int = 0
    skipped_existing: int = 0
    abandoned: int = 0
    cancelled: bool = False
    watermark: str | None = None
    skipped_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "items_found": self.items_found,
            "dropped": self.dropped,
            "downloaded": self.downloaded,
            "skipped_existing": self.skipped_existing,
            "abandoned": self.abandoned,
            "cancelled": self.cancelled,
            "watermark": self.watermark,
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class SyncStatus:
    """Point-in-time engine status."""

    state: EngineState = EngineState.STOPPED
    active_downloads: int = 0
    queue_depth: int = 0
    pending_retries: int = 0
    last_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "active_downloads": self.active_downloads,
            "queue_depth": self.queue_depth,
            "pending_retries": self.pending_retries,
            "last_error": self.last_error,
        }
