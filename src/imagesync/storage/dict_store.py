"""
In-memory stores.

Used for tests and for embedding the engine where persistence is handled
elsewhere. Nothing here survives a restart.
"""

from __future__ import annotations

from imagesync.errors import MetadataWriteError
from imagesync.storage.base import ImageRecord, MetadataStore, SettingsStore


class DictSettingsStore(SettingsStore):
    """Dictionary-backed settings."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value


class DictMetadataStore(MetadataStore):
    """
    Dictionary-backed metadata store.

    ``fail_next`` makes the next N inserts raise MetadataWriteError, which
    lets callers exercise the retry path.
    """

    def __init__(self):
        self._records: dict[str, ImageRecord] = {}
        self.insert_attempts = 0
        self.fail_next = 0

    async def insert(self, record: ImageRecord) -> bool:
        self.insert_attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise MetadataWriteError(f"Insert rejected for {record.id}")

        if record.id in self._records:
            return False
        self._records[record.id] = record
        return True

    async def get(self, record_id: str) -> ImageRecord | None:
        return self._records.get(record_id)

    def all(self) -> list[ImageRecord]:
        """All stored records in insertion order."""
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records
