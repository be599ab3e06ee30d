"""
Pytest configuration and shared fixtures for image sync tests.
"""

import asyncio
import hashlib
import logging
import tempfile
from collections.abc import AsyncGenerator, Callable, Generator
from pathlib import Path
from typing import Any

import httpx
import pytest

SOURCE_ENDPOINT = "https://source.test/api/images"
IMAGE_HOST = "https://cdn.test"


class FakeSource:
    """
    In-process stand-in for the image source, served through httpx.MockTransport.

    Serves a JSON manifest at SOURCE_ENDPOINT and image bytes under IMAGE_HOST.
    """

    def __init__(self):
        self.manifest: Any = []
        self.manifest_status = 200
        self.images: dict[str, bytes] = {}
        self.image_status: dict[str, int] = {}
        self.fail_times: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.gate: asyncio.Event | None = None
        self.manifest_gate: asyncio.Event | None = None
        self.transfer_delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0
        self.on_image_request: Callable[[httpx.Request], None] | None = None

    def add_image(
        self,
        item_id: str,
        content: bytes | None = None,
        device_id: str = "cam-1",
        timestamp: str = "2025-03-01T10:00:00Z",
        **extra: Any,
    ) -> dict[str, Any]:
        """Add an image to the manifest and return its record."""
        url = f"{IMAGE_HOST}/{device_id}/{item_id}.jpg"
        self.images[url] = content if content is not None else f"image-{item_id}".encode()
        record = {"id": item_id, "url": url, "timestamp": timestamp, "deviceId": device_id, **extra}
        self.manifest.append(record)
        return record

    def image_requests(self, url: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if str(r.url).startswith(IMAGE_HOST) and (url is None or str(r.url) == url)
        ]

    def manifest_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(SOURCE_ENDPOINT)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url.startswith(SOURCE_ENDPOINT):
            if self.manifest_gate is not None:
                await self.manifest_gate.wait()
            if isinstance(self.manifest, (bytes, str)):
                return httpx.Response(self.manifest_status, content=self.manifest)
            return httpx.Response(self.manifest_status, json=self.manifest)

        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.on_image_request is not None:
                self.on_image_request(request)
            if self.gate is not None:
                await self.gate.wait()
            if self.transfer_delay:
                await asyncio.sleep(self.transfer_delay)

            if self.fail_times.get(url, 0) > 0:
                self.fail_times[url] -= 1
                return httpx.Response(500)
            if url in self.image_status:
                return httpx.Response(self.image_status[url])
            if url not in self.images:
                return httpx.Response(404)
            return httpx.Response(200, content=self.images[url])
        finally:
            self.in_flight -= 1

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def md5(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until ``predicate`` is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture(autouse=True)
def reset_log_level() -> Generator[None, None, None]:
    """Engines set the package logger level; restore it after each test."""
    logger = logging.getLogger("imagesync")
    level = logger.level
    yield
    logger.setLevel(level)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_config(temp_dir: Path):
    """Factory for valid configurations rooted in the temp directory."""
    from imagesync.config import validate_config

    def _make(**overrides: Any):
        raw = {
            "source_endpoint": SOURCE_ENDPOINT,
            "storage_root": str(temp_dir / "images"),
            "polling_interval_ms": 60_000,
            "retry_delay_ms": 1000,
        }
        raw.update(overrides)
        return validate_config(raw)

    return _make


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def settings_store():
    from imagesync.storage import DictSettingsStore

    return DictSettingsStore()


@pytest.fixture
def metadata_store():
    from imagesync.storage import DictMetadataStore

    return DictMetadataStore()


@pytest.fixture
async def make_engine(source, settings_store, metadata_store, make_config) -> AsyncGenerator:
    """Factory for engines wired to the fake source; all are stopped afterwards."""
    from imagesync.sync import SyncEngine

    engines = []

    def _make(config=None, **kwargs: Any):
        engine = SyncEngine(
            config or make_config(),
            settings_store=settings_store,
            metadata_store=metadata_store,
            transport=source.transport(),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make

    if source.gate is not None:
        source.gate.set()
    for engine in engines:
        await engine.stop()


@pytest.fixture
async def http_client(source) -> AsyncGenerator:
    async with httpx.AsyncClient(transport=source.transport()) as client:
        yield client
