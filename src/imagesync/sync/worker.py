"""
Download worker: moves one remote image onto local disk and records it.

Files land at ``<storage_root>/<device_id>/<file_name>``. Transfers stream
into a hidden temp file next to the target while an MD5 accumulator is fed
chunk by chunk, then the temp file is renamed into place.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from uuid import uuid4

import httpx

from imagesync.config import SyncConfiguration
from imagesync.errors import (
    MetadataWriteError,
    NetworkError,
    OperationCancelled,
    StorageError,
)
from imagesync.storage.base import ImageRecord, MetadataStore
from imagesync.sync.cancel import CancelToken
from imagesync.sync.models import (
    DownloadCancelled,
    DownloadFailure,
    DownloadOutcome,
    DownloadSuccess,
    ImageItem,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def md5_file(path: Path) -> str:
    """MD5 of a local file, read in chunks."""
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _disambiguate(path: Path, content_hash: str) -> Path:
    return path.with_name(f"{path.stem}-{content_hash[:8]}{path.suffix}")


class DownloadWorker:
    """
    Downloads images and records their metadata.

    ``download()`` never raises for per-item problems; they come back as a
    DownloadFailure so the engine can consult the retry ledger.
    """

    def __init__(self, client: httpx.AsyncClient, metadata_store: MetadataStore):
        self._client = client
        self._metadata = metadata_store

    async def download(
        self,
        item: ImageItem,
        config: SyncConfiguration,
        cancel: CancelToken,
    ) -> DownloadOutcome:
        try:
            return await cancel.run(self._download(item, config))
        except OperationCancelled:
            logger.debug(f"Download of image {item.id} cancelled")
            return DownloadCancelled()
        except NetworkError as e:
            return DownloadFailure(reason=str(e), error=e)
        except StorageError as e:
            return DownloadFailure(reason=str(e), error=e)
        except MetadataWriteError as e:
            return DownloadFailure(reason=str(e), error=e)

    async def _download(self, item: ImageItem, config: SyncConfiguration) -> DownloadSuccess:
        device_dir = config.storage_root / item.device_id
        target = device_dir / item.file_name

        try:
            device_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create directory {device_dir}: {e}") from e

        if item.content_hash and target.exists():
            existing_hash = self._hash_existing(target)
            if existing_hash == item.content_hash:
                logger.debug(f"Image {item.id} already present at {target}, skipping transfer")
                await self._record(item, target, existing_hash)
                return DownloadSuccess(local_path=target, content_hash=existing_hash, skipped=True)

        temp_path = device_dir / f".{item.file_name}.{uuid4().hex}.part"
        try:
            content_hash = await self._transfer(item, config, temp_path)
            local_path, skipped = self._place(temp_path, target, content_hash)
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

        if not skipped:
            logger.info(f"Downloaded image {item.id} to {local_path}")
        await self._record(item, local_path, content_hash)
        return DownloadSuccess(local_path=local_path, content_hash=content_hash, skipped=skipped)

    async def _transfer(self, item: ImageItem, config: SyncConfiguration, temp_path: Path) -> str:
        """Stream the image into ``temp_path``; return its MD5."""
        digest = hashlib.md5()
        try:
            async with self._client.stream(
                "GET", item.remote_url, headers=config.auth_headers()
            ) as response:
                if not response.is_success:
                    raise NetworkError(
                        f"Download failed with status {response.status_code}",
                        status_code=response.status_code,
                    )
                try:
                    with open(temp_path, "wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            digest.update(chunk)
                            f.write(chunk)
                except OSError as e:
                    raise StorageError(f"Cannot write {temp_path}: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Download of {item.remote_url} failed: {e}") from e
        return digest.hexdigest()

    def _place(self, temp_path: Path, target: Path, content_hash: str) -> tuple[Path, bool]:
        """
        Move the finished temp file to its final name.

        Returns (path, skipped). An existing file with the same content is
        kept; one with different content is never overwritten.
        """
        try:
            if target.exists():
                if md5_file(target) == content_hash:
                    return target, True
                alternate = _disambiguate(target, content_hash)
                logger.warning(
                    f"{target} exists with different content; storing new image as {alternate.name}"
                )
                target = alternate
            os.replace(temp_path, target)
        except OSError as e:
            raise StorageError(f"Cannot move download into {target}: {e}") from e
        return target, False

    def _hash_existing(self, path: Path) -> str:
        try:
            return md5_file(path)
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    async def _record(self, item: ImageItem, local_path: Path, content_hash: str) -> None:
        record = ImageRecord(
            id=item.id,
            device_id=item.device_id,
            url=item.remote_url,
            local_path=str(local_path),
            md5_hash=content_hash,
            created_at=item.timestamp,
        )
        inserted = await self._metadata.insert(record)
        if not inserted:
            logger.debug(f"Metadata for image {item.id} already recorded")
