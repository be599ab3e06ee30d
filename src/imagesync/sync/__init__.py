"""
Periodic image synchronization.

Pulls new device images from a remote source:
- Manifest fetch since the last watermark
- Bounded concurrent downloads with content hashing
- Retry ledger with per-item budget
- Start/stop/reconfigure state machine
"""

from .cancel import CancelToken
from .engine import SyncEngine, is_before, latest_timestamp
from .ledger import RetryLedger
from .manifest import ManifestClient, parse_item
from .models import (
    CycleReport,
    DownloadCancelled,
    DownloadFailure,
    DownloadOutcome,
    DownloadSuccess,
    EngineState,
    ImageItem,
    ManifestResult,
    SyncStatus,
)
from .worker import DownloadWorker, md5_file

__all__ = [
    # Engine
    "SyncEngine",
    "EngineState",
    "SyncStatus",
    "CycleReport",
    "latest_timestamp",
    "is_before",
    # Components
    "CancelToken",
    "RetryLedger",
    "ManifestClient",
    "DownloadWorker",
    "parse_item",
    "md5_file",
    # Items and outcomes
    "ImageItem",
    "ManifestResult",
    "DownloadOutcome",
    "DownloadSuccess",
    "DownloadFailure",
    "DownloadCancelled",
]
