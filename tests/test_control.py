"""
Tests for the engine registry and the background sync trigger.
"""

import asyncio
import logging

import pytest

from conftest import SOURCE_ENDPOINT, wait_for
from imagesync.control import (
    DEFAULT_PURPOSE,
    MINIMUM_INTERVAL_SECONDS,
    BackgroundFetchResult,
    BackgroundSyncTask,
    EngineRegistry,
)
from imagesync.errors import ConfigValidationError, EngineNotInitializedError
from imagesync.sync import EngineState, SyncEngine


@pytest.fixture
async def registry(source, settings_store, metadata_store):
    registry = EngineRegistry(
        settings_store=settings_store,
        metadata_store=metadata_store,
        transport=source.transport(),
    )
    yield registry
    await registry.reset()


@pytest.fixture
def raw_config(temp_dir):
    return {
        "sourceEndpoint": SOURCE_ENDPOINT,
        "storageRoot": str(temp_dir / "images"),
        "pollingIntervalMs": 60_000,
    }


class TestEngineRegistry:
    """Tests for EngineRegistry."""

    def test_first_get_requires_config(self, registry):
        with pytest.raises(EngineNotInitializedError):
            registry.get()

    def test_get_creates_once(self, registry, raw_config):
        """Test that later calls return the same engine, with or without config."""
        engine = registry.get(config=raw_config)

        assert isinstance(engine, SyncEngine)
        assert registry.get() is engine
        assert registry.get(config={**raw_config, "maxConcurrentDownloads": 9}) is engine
        assert engine.get_config().max_concurrent_downloads == 3
        assert DEFAULT_PURPOSE in registry

    def test_invalid_config_rejected(self, registry, raw_config):
        with pytest.raises(ConfigValidationError):
            registry.get(config={**raw_config, "retryAttempts": 0})
        assert DEFAULT_PURPOSE not in registry

    def test_purposes_are_independent(self, registry, raw_config):
        first = registry.get("image-sync", raw_config)
        second = registry.get("thumbnails", raw_config)

        assert first is not second
        assert sorted(registry.purposes()) == ["image-sync", "thumbnails"]

    def test_engines_share_stores(self, registry, raw_config, metadata_store):
        engine = registry.get(config=raw_config)
        assert engine.metadata_store is metadata_store

    def test_register_external_engine(self, registry, make_config, settings_store, metadata_store):
        engine = SyncEngine(make_config(), settings_store=settings_store, metadata_store=metadata_store)

        registry.register(engine, "custom")
        registry.register(engine, "custom")

        assert registry.get("custom") is engine
        other = SyncEngine(make_config(), settings_store=settings_store, metadata_store=metadata_store)
        with pytest.raises(ValueError):
            registry.register(other, "custom")

    @pytest.mark.asyncio
    async def test_remove_stops_engine(self, registry, raw_config):
        engine = registry.get(config=raw_config)
        await engine.start()

        assert await registry.remove()
        assert engine.state == EngineState.STOPPED
        assert DEFAULT_PURPOSE not in registry
        assert not await registry.remove()

    @pytest.mark.asyncio
    async def test_reset_stops_all(self, registry, raw_config):
        engines = [registry.get(name, raw_config) for name in ("a", "b")]
        for engine in engines:
            await engine.start()

        await registry.reset()

        assert registry.purposes() == []
        assert all(engine.state == EngineState.STOPPED for engine in engines)

    @pytest.mark.asyncio
    async def test_ui_and_background_share_engine(self, registry, raw_config, source):
        """Test that both control paths drive one engine and one ledger."""
        engine = registry.get(config=raw_config)
        await engine.start()
        task = BackgroundSyncTask(registry)

        await task.run_once()

        assert registry.get() is engine
        assert len(source.manifest_requests()) == 2


class TestBackgroundSyncTask:
    """Tests for BackgroundSyncTask."""

    def test_interval_has_floor(self, registry, raw_config):
        task = BackgroundSyncTask(registry, raw_config)
        assert task.interval == MINIMUM_INTERVAL_SECONDS

    def test_interval_follows_slow_polling(self, registry, raw_config, make_config):
        task = BackgroundSyncTask(registry, {**raw_config, "pollingIntervalMs": 3_600_000})
        assert task.interval == 3600

        task = BackgroundSyncTask(registry, make_config(polling_interval_ms=1_800_000))
        assert task.interval == 1800

    @pytest.mark.asyncio
    async def test_not_initialized_fails(self, registry):
        task = BackgroundSyncTask(registry)

        assert await task.run_once() == BackgroundFetchResult.FAILED
        assert task.last_result == BackgroundFetchResult.FAILED

    @pytest.mark.asyncio
    async def test_stopped_engine_fails(self, registry, raw_config, source):
        task = BackgroundSyncTask(registry, raw_config)

        assert await task.run_once() == BackgroundFetchResult.FAILED
        assert source.requests == []

    @pytest.mark.asyncio
    async def test_new_data(self, registry, raw_config, source):
        await registry.get(config=raw_config).start()
        source.add_image("img-1")
        task = BackgroundSyncTask(registry, raw_config)

        assert await task.run_once() == BackgroundFetchResult.NEW_DATA

    @pytest.mark.asyncio
    async def test_no_data(self, registry, raw_config):
        await registry.get(config=raw_config).start()
        task = BackgroundSyncTask(registry, raw_config)

        assert await task.run_once() == BackgroundFetchResult.NO_DATA

    @pytest.mark.asyncio
    async def test_source_error_fails(self, registry, raw_config, source):
        await registry.get(config=raw_config).start()
        source.manifest_status = 502
        task = BackgroundSyncTask(registry, raw_config)

        assert await task.run_once() == BackgroundFetchResult.FAILED

    @pytest.mark.asyncio
    async def test_register_and_unregister(self, registry, raw_config):
        task = BackgroundSyncTask(registry, raw_config)

        assert task.register()
        assert task.is_registered
        assert not task.register()

        await task.unregister()
        assert not task.is_registered
        await task.unregister()

    @pytest.mark.asyncio
    async def test_periodic_runs(self, registry, raw_config, source):
        """Test that a registered task fires on its interval."""
        await registry.get(config=raw_config).start()
        task = BackgroundSyncTask(
            registry, {**raw_config, "pollingIntervalMs": 1000}, minimum_interval=0.05
        )
        assert task.interval == 1.0

        task.register()
        try:
            while task.last_result is None:
                await asyncio.sleep(0.01)
        finally:
            await task.unregister()

        assert task.last_result == BackgroundFetchResult.NO_DATA
        assert len(source.manifest_requests()) >= 2

    @pytest.mark.asyncio
    async def test_update_config_keeps_registration(self, registry, raw_config):
        task = BackgroundSyncTask(registry, raw_config)
        task.register()

        await task.update_config({**raw_config, "pollingIntervalMs": 7_200_000})

        assert task.is_registered
        assert task.interval == 7200
        await task.unregister()


class TestBackgroundSyncTaskErrors:
    """Tests for unexpected failures inside the background trigger."""

    @pytest.fixture
    async def failing_registry(self, source, settings_store, metadata_store):
        calls = []

        async def provider():
            calls.append(1)
            raise RuntimeError("auth backend exploded")

        registry = EngineRegistry(
            settings_store=settings_store,
            metadata_store=metadata_store,
            identity_provider=provider,
            transport=source.transport(),
        )
        registry.calls = calls
        yield registry
        await registry.reset()

    @pytest.mark.asyncio
    async def test_unexpected_error_reports_failed(self, failing_registry, raw_config, caplog):
        """Test that a non-sync exception becomes FAILED instead of escaping."""
        await failing_registry.get(config=raw_config).start()
        task = BackgroundSyncTask(failing_registry)

        with caplog.at_level(logging.ERROR, logger="imagesync"):
            result = await task.run_once()

        assert result == BackgroundFetchResult.FAILED
        assert task.last_result == BackgroundFetchResult.FAILED
        assert "auth backend exploded" in caplog.text

    @pytest.mark.asyncio
    async def test_registered_loop_survives_unexpected_error(self, failing_registry, raw_config):
        """Test that the periodic task keeps running after a run blows up."""
        await failing_registry.get(config=raw_config).start()
        task = BackgroundSyncTask(
            failing_registry, {**raw_config, "pollingIntervalMs": 1000}, minimum_interval=0.05
        )
        calls_after_start = len(failing_registry.calls)

        task.register()
        try:
            await wait_for(lambda: len(failing_registry.calls) >= calls_after_start + 2)
            assert task.is_registered
            assert task.last_result == BackgroundFetchResult.FAILED
        finally:
            await task.unregister()
