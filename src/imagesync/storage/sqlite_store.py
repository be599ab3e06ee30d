"""
SQLite stores for settings and image metadata.

Human-inspectable single-file databases. The settings store keeps the sync
watermark across restarts; the metadata store is a local stand-in for the
hosted ``device_images`` table.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from imagesync.errors import MetadataWriteError, StorageError
from imagesync.storage.base import ImageRecord, MetadataStore, SettingsStore


def _connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


class SQLiteSettingsStore(SettingsStore):
    """Key-value settings in a SQLite table."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = _connect(self._db_path)
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                """)
                self._conn.commit()
            except (OSError, sqlite3.Error) as e:
                raise StorageError(f"Cannot open settings database {self._db_path}: {e}") from e
        return self._conn

    async def get(self, key: str) -> str | None:
        try:
            row = self._connection().execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read setting {key}: {e}") from e
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        conn = self._connection()
        try:
            conn.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write setting {key}: {e}") from e

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class SQLiteMetadataStore(MetadataStore):
    """``device_images`` rows in a local SQLite database."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = _connect(self._db_path)
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS device_images (
                        id TEXT PRIMARY KEY,
                        device_id TEXT NOT NULL,
                        url TEXT NOT NULL,
                        local_path TEXT NOT NULL,
                        md5_hash TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                """)
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_device_images_device ON device_images(device_id)"
                )
                self._conn.commit()
            except (OSError, sqlite3.Error) as e:
                raise MetadataWriteError(f"Cannot open metadata database {self._db_path}: {e}") from e
        return self._conn

    async def insert(self, record: ImageRecord) -> bool:
        conn = self._connection()
        try:
            conn.execute(
                """
                INSERT INTO device_images (id, device_id, url, local_path, md5_hash, created_at)
                VALUES (:id, :device_id, :url, :local_path, :md5_hash, :created_at)
                """,
                record.to_row(),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            return False
        except sqlite3.Error as e:
            raise MetadataWriteError(f"Failed to record image {record.id}: {e}") from e
        return True

    async def get(self, record_id: str) -> ImageRecord | None:
        row = self._connection().execute(
            "SELECT * FROM device_images WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            return None
        return ImageRecord(**dict(row))

    async def count(self, device_id: str | None = None) -> int:
        """Count recorded images, optionally for a single device."""
        if device_id is None:
            row = self._connection().execute("SELECT COUNT(*) FROM device_images").fetchone()
        else:
            row = self._connection().execute(
                "SELECT COUNT(*) FROM device_images WHERE device_id = ?", (device_id,)
            ).fetchone()
        return row[0]

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
