"""
Tests for the command-line interface.
"""

import asyncio
import logging
import signal

import pytest
from typer.testing import CliRunner

from conftest import wait_for
from imagesync.cli import _run_engine, app
from imagesync.config import LogLevel
from imagesync.logging_setup import LOGGER_NAME, configure_logging
from imagesync.storage import LAST_SYNC_KEY, ImageRecord, SQLiteMetadataStore, SQLiteSettingsStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, temp_dir):
    """Keep the user's environment and .env files out of CLI tests."""
    for name in ("SOURCE_ENDPOINT", "AUTH_TOKEN", "MAX_CONCURRENT_DOWNLOADS", "STORAGE_ROOT"):
        monkeypatch.delenv(f"IMAGESYNC_{name}", raising=False)
    monkeypatch.chdir(temp_dir)
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class TestConfigCommand:
    """Tests for `imagesync config`."""

    def test_shows_effective_config(self, temp_dir):
        env_file = temp_dir / "sync.env"
        env_file.write_text("IMAGESYNC_AUTH_TOKEN=s3cret\n")

        result = runner.invoke(
            app, ["config", "--endpoint", "https://src.test/img", "--env-file", str(env_file)]
        )

        assert result.exit_code == 0
        assert "https://src.test/img" in result.output
        assert "********" in result.output
        assert "s3cret" not in result.output

    def test_invalid_config_exits(self):
        result = runner.invoke(app, ["config", "--endpoint", "not-a-url"])

        assert result.exit_code == 1
        assert "source_endpoint" in result.output

    def test_missing_endpoint_exits(self):
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 1


class TestStatusCommand:
    """Tests for `imagesync status`."""

    def test_never_synced(self, temp_dir):
        result = runner.invoke(app, ["status", "--data-dir", str(temp_dir)])

        assert result.exit_code == 0
        assert "never" in result.output
        assert "0" in result.output

    def test_last_sync_shown(self, temp_dir):
        async def seed():
            settings = SQLiteSettingsStore(temp_dir / "settings.db")
            metadata = SQLiteMetadataStore(temp_dir / "metadata.db")
            await settings.set(LAST_SYNC_KEY, "2025-03-01T10:00:00Z")
            await metadata.insert(
                ImageRecord(
                    id="img-1",
                    device_id="cam-1",
                    url="https://cdn.test/img-1.jpg",
                    local_path="/tmp/img-1.jpg",
                    md5_hash="0" * 32,
                    created_at="2025-03-01T10:00:00Z",
                )
            )
            await settings.close()
            await metadata.close()

        asyncio.run(seed())

        result = runner.invoke(app, ["status", "--data-dir", str(temp_dir)])

        assert result.exit_code == 0
        assert "2025-03-01T10:00:00Z" in result.output
        assert "1" in result.output


class TestOnceCommand:
    """Tests for `imagesync once`."""

    def test_metadata_url_requires_key(self, temp_dir):
        result = runner.invoke(
            app,
            [
                "once",
                "--endpoint", "https://src.test/img",
                "--data-dir", str(temp_dir),
                "--metadata-url", "https://db.test",
            ],
        )

        assert result.exit_code == 1
        assert "--metadata-key" in result.output


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_file_handler(self, temp_dir):
        log_path = temp_dir / "logs" / "sync.log"
        logger = configure_logging(LogLevel.DEBUG, log_path)
        try:
            logging.getLogger(f"{LOGGER_NAME}.sync.engine").debug("hello from the engine")
            for handler in logger.handlers:
                handler.flush()

            assert logger.level == logging.DEBUG
            assert "hello from the engine" in log_path.read_text()
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()

    def test_repeated_calls_replace_handlers(self):
        logger = configure_logging(LogLevel.INFO)
        configure_logging(LogLevel.WARN)
        try:
            assert len(logger.handlers) == 1
            assert logger.level == logging.WARNING
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()


class TestRunEngine:
    """Tests for the long-running engine driver behind `imagesync run`."""

    @pytest.mark.asyncio
    async def test_interrupt_during_first_cycle(self, source, make_config, temp_dir, capsys):
        """Test that Ctrl-C while the first cycle downloads stops cleanly."""
        source.add_image("img-1")
        source.gate = asyncio.Event()
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}

        run = asyncio.create_task(
            _run_engine(make_config(), temp_dir, None, None, keep_running=True, transport=source.transport())
        )
        try:
            await wait_for(lambda: source.in_flight == 1)
            signal.raise_signal(signal.SIGINT)
            await asyncio.wait_for(run, timeout=5)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            source.gate.set()

        output = capsys.readouterr().out
        assert "Received shutdown signal" in output
        assert "Syncing from" not in output

        async def stored_watermark():
            settings = SQLiteSettingsStore(temp_dir / "settings.db")
            try:
                return await settings.get(LAST_SYNC_KEY)
            finally:
                await settings.close()

        assert await stored_watermark() is None
