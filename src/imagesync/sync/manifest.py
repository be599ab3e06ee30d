"""
Manifest client: asks the image source what changed since the watermark.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

import httpx

from imagesync.config import SyncConfiguration
from imagesync.errors import AuthenticationError, NetworkError, OperationCancelled, ProtocolError
from imagesync.sync.cancel import CancelToken
from imagesync.sync.models import ImageItem, ManifestResult

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "url", "timestamp")
UNKNOWN_DEVICE = "unknown"
DEFAULT_EXTENSION = "jpg"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_component(value: str, fallback: str) -> str:
    """Reduce ``value`` to a single safe path component."""
    name = PurePosixPath(value.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    return name or fallback


def file_extension(url: str) -> str:
    """Lowercased extension of the URL path, ``jpg`` if there is none."""
    suffix = PurePosixPath(urlparse(url).path).suffix
    ext = suffix.lstrip(".").lower()
    if not ext or not ext.isalnum():
        return DEFAULT_EXTENSION
    return ext


def parse_item(record: Any) -> ImageItem | None:
    """Map one manifest record to an ImageItem, or None if malformed."""
    if not isinstance(record, dict):
        return None
    for name in REQUIRED_FIELDS:
        value = record.get(name)
        if value is None or value == "":
            return None

    item_id = str(record["id"])
    url = str(record["url"])
    device_id = record.get("deviceId")
    device_id = safe_component(str(device_id), UNKNOWN_DEVICE) if device_id else UNKNOWN_DEVICE

    file_name = record.get("fileName")
    fallback = f"image_{safe_component(item_id, 'item')}.{file_extension(url)}"
    file_name = safe_component(str(file_name), fallback) if file_name else fallback

    content_hash = record.get("md5") or record.get("contentHash")

    return ImageItem(
        id=item_id,
        remote_url=url,
        timestamp=str(record["timestamp"]),
        device_id=device_id,
        file_name=file_name,
        content_hash=str(content_hash).lower() if content_hash else None,
    )


class ManifestClient:
    """
    Fetches the list of new images from the source endpoint.

    Each call issues a fresh request. Malformed records are dropped with a
    warning instead of failing the whole fetch.
    """

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    def build_params(self, watermark: str | None, config: SyncConfiguration) -> dict[str, str]:
        params: dict[str, str] = {}
        if watermark:
            params["since"] = watermark
        if config.accepted_file_types:
            params["fileTypes"] = ",".join(sorted(config.accepted_file_types))
        return params

    async def fetch_since(
        self,
        watermark: str | None,
        config: SyncConfiguration,
        cancel: CancelToken,
    ) -> ManifestResult:
        """
        Fetch items changed since ``watermark``.

        Raises:
            AuthenticationError: the source rejected the credentials
            NetworkError: transport failure or unexpected status
            ProtocolError: the body is not a JSON list
        """
        headers = {"Accept": "application/json", **config.auth_headers()}

        try:
            response = await cancel.run(
                self._client.get(
                    config.source_endpoint,
                    params=self.build_params(watermark, config),
                    headers=headers,
                )
            )
        except OperationCancelled:
            logger.info("Manifest fetch aborted")
            return ManifestResult(cancelled=True)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch manifest: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Manifest request rejected: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise NetworkError(
                f"Failed to fetch images: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Invalid response format: {e}") from e

        if not isinstance(data, list):
            raise ProtocolError("Invalid response format: expected an array")

        items: list[ImageItem] = []
        dropped = 0
        for index, record in enumerate(data):
            item = parse_item(record)
            if item is None:
                dropped += 1
                logger.warning(
                    f"Dropping malformed manifest record at index {index}: "
                    f"missing one of {', '.join(REQUIRED_FIELDS)}"
                )
                continue
            items.append(item)

        logger.debug(f"Manifest returned {len(items)} items ({dropped} dropped)")
        return ManifestResult(items=items, dropped=dropped)
