"""
Base storage interfaces for the sync engine's collaborators.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

LAST_SYNC_KEY = "imageSyncService:lastSync"


@dataclass(frozen=True)
class ImageRecord:
    """A row in the ``device_images`` collection."""

    id: str
    device_id: str
    url: str
    local_path: str
    md5_hash: str
    created_at: str

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


class SettingsStore(ABC):
    """
    Durable local key-value settings.

    Values survive process restarts. Only strings are stored.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value for ``key`` or None if unset."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Durably store ``value`` under ``key``."""
        pass

    async def close(self) -> None:
        """Release any resources held by the store."""
        pass


class MetadataStore(ABC):
    """
    Remote store of synced image metadata.

    Inserts are idempotent: a primary-key conflict means the image was
    already recorded and is reported as ``False`` rather than an error.
    """

    @abstractmethod
    async def insert(self, record: ImageRecord) -> bool:
        """
        Insert a record.

        Returns True if inserted, False if a record with the same id exists.
        Raises MetadataWriteError on any other failure.
        """
        pass

    @abstractmethod
    async def get(self, record_id: str) -> ImageRecord | None:
        """Retrieve a record by id."""
        pass

    async def close(self) -> None:
        """Release any resources held by the store."""
        pass
