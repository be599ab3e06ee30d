"""
Hosted metadata store over a PostgREST-style HTTP API.

Rows are inserted with ``POST <base_url>/rest/v1/device_images``. A 409
means the row already exists, which counts as already synced.
"""

from __future__ import annotations

import httpx

from imagesync.errors import MetadataWriteError
from imagesync.storage.base import ImageRecord, MetadataStore

TABLE = "device_images"


class RestMetadataStore(MetadataStore):
    """
    Metadata store backed by a hosted database's REST endpoint.

    Features:
    - Idempotent inserts (primary-key conflict is not an error)
    - Service key plus optional user access token
    - Single pooled HTTP client, closed with ``close()``
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
            },
            transport=transport,
            timeout=timeout,
        )

    async def insert(self, record: ImageRecord) -> bool:
        try:
            response = await self._client.post(
                f"/{TABLE}",
                json=record.to_row(),
                headers={"Prefer": "return=minimal"},
            )
        except httpx.HTTPError as e:
            raise MetadataWriteError(f"Failed to record image {record.id}: {e}") from e

        if response.status_code == 409:
            return False
        if response.status_code not in (200, 201, 204):
            raise MetadataWriteError(
                f"Failed to record image {record.id}: HTTP {response.status_code} {response.text}"
            )
        return True

    async def get(self, record_id: str) -> ImageRecord | None:
        try:
            response = await self._client.get(
                f"/{TABLE}",
                params={"id": f"eq.{record_id}", "select": "*"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise MetadataWriteError(f"Failed to read image {record_id}: {e}") from e

        rows = response.json()
        if not rows:
            return None
        row = rows[0]
        return ImageRecord(
            id=str(row["id"]),
            device_id=str(row["device_id"]),
            url=row["url"],
            local_path=row["local_path"],
            md5_hash=row["md5_hash"],
            created_at=row["created_at"],
        )

    async def close(self) -> None:
        await self._client.aclose()
