"""
Sync engine for device image synchronization.

Implements periodic pull-based synchronization:
- Fixed-rate polling with an immediate first cycle
- Bounded concurrent downloads
- Retry with a per-item budget and delay
- Watermark persistence after each fully settled cycle
- Graceful stop that waits for in-flight downloads
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from imagesync.auth.identity import IdentityProvider
from imagesync.config import SyncConfiguration
from imagesync.errors import (
    AlreadyRunningError,
    ConfigValidationError,
    ImageSyncError,
    NotRunningError,
    OperationCancelled,
    StorageError,
)
from imagesync.logging_setup import apply_log_level
from imagesync.storage.base import LAST_SYNC_KEY, MetadataStore, SettingsStore
from imagesync.sync.cancel import CancelToken
from imagesync.sync.ledger import RetryLedger
from imagesync.sync.manifest import ManifestClient
from imagesync.sync.models import (
    CycleReport,
    DownloadCancelled,
    DownloadFailure,
    DownloadOutcome,
    DownloadSuccess,
    EngineState,
    ImageItem,
    SyncStatus,
)
from imagesync.sync.worker import DownloadWorker

logger = logging.getLogger(__name__)

STOP_POLL_INTERVAL = 0.05
HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def latest_timestamp(timestamps: list[str]) -> str | None:
    """The latest of ``timestamps``, returned as originally written."""
    if not timestamps:
        return None
    parsed = [(_parse_timestamp(ts), ts) for ts in timestamps]
    valid = [(dt, ts) for dt, ts in parsed if dt is not None]
    if valid:
        return max(valid, key=lambda pair: pair[0])[1]
    return max(timestamps)


def is_before(timestamp: str | None, watermark: str) -> bool:
    """True if ``timestamp`` is strictly earlier than ``watermark``."""
    if timestamp is None:
        return False
    left, right = _parse_timestamp(timestamp), _parse_timestamp(watermark)
    if left is None or right is None:
        return timestamp < watermark
    return left < right


@dataclass
class _Cycle:
    """Bookkeeping for one cycle's items until they all settle."""

    config: SyncConfiguration
    token: CancelToken
    report: CycleReport
    pending: set[str] = field(default_factory=set)
    failures: dict[str, list[str]] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)

    def settle(self, item_id: str) -> None:
        self.pending.discard(item_id)
        if not self.pending:
            self.done.set()


class SyncEngine:
    """
    Periodic image sync engine.

    Owns the run/stop state machine, the polling timer, the download queue
    and the watermark. One engine instance per purpose; share it through
    ``imagesync.control.EngineRegistry``.
    """

    def __init__(
        self,
        config: SyncConfiguration,
        *,
        settings_store: SettingsStore,
        metadata_store: MetadataStore,
        identity_provider: IdentityProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        self.settings_store = settings_store
        self.metadata_store = metadata_store
        self.identity_provider = identity_provider
        self._transport = transport

        self.ledger = RetryLedger(config.retry_attempts)
        self._state = EngineState.STOPPED
        self._last_error = ""
        self.last_report: CycleReport | None = None

        # Run-scoped resources, created by start()
        self._token: CancelToken | None = None
        self._client: httpx.AsyncClient | None = None
        self._manifest: ManifestClient | None = None
        self._worker: DownloadWorker | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._stopping: asyncio.Future[None] | None = None
        self._cycle_lock = asyncio.Lock()

        # Download accounting
        self._queue: deque[tuple[ImageItem, _Cycle]] = deque()
        self._active_downloads = 0
        self._pending_retries = 0
        self._tasks: set[asyncio.Task[Any]] = set()

        apply_log_level(config.log_level)

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    def get_config(self) -> SyncConfiguration:
        """Current configuration (immutable)."""
        return self._config

    def get_status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            active_downloads=self._active_downloads,
            queue_depth=len(self._queue),
            pending_retries=self._pending_retries,
            last_error=self._last_error,
        )

    async def get_last_sync_timestamp(self) -> str | None:
        """The persisted watermark, or None if never synced or unreadable."""
        try:
            return await self.settings_store.get(LAST_SYNC_KEY)
        except StorageError as e:
            logger.error(f"Failed to get last sync timestamp: {e}")
            return None

    # Lifecycle

    async def start(self, strict: bool = False) -> None:
        """
        Start syncing: one immediate cycle, then one every polling interval.

        Calling start() on a running engine is logged and ignored, unless
        ``strict`` is set, in which case AlreadyRunningError is raised.
        """
        if self._state == EngineState.RUNNING:
            if strict:
                raise AlreadyRunningError("Service is already running")
            logger.info("Service is already running")
            return

        token = CancelToken()
        self._token = token
        self._client = httpx.AsyncClient(
            transport=self._transport,
            timeout=HTTP_TIMEOUT,
            follow_redirects=True,
        )
        self._manifest = ManifestClient(self._client)
        self._worker = DownloadWorker(self._client, self.metadata_store)
        self._state = EngineState.RUNNING

        await self._guarded_cycle(token)

        # stop() may have run while the first cycle was in progress
        if token.cancelled or self._token is not token:
            return

        self._timer_task = asyncio.create_task(self._timer_loop(token))
        logger.info("Image sync service started")

    async def stop(self) -> None:
        """
        Stop syncing.

        Cancels the timer, aborts the manifest fetch, transfers and pending
        retry delays, then returns once no download is active.
        """
        if self._state == EngineState.STOPPED:
            logger.info("Service is not running")
            return

        # Concurrent callers share one shutdown
        if self._stopping is None:
            self._stopping = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._stopping)

    async def _shutdown(self) -> None:
        token = self._token
        if token is not None:
            token.cancel()

        if self._timer_task is not None:
            await asyncio.gather(self._timer_task, return_exceptions=True)
            self._timer_task = None

        # Queued items never started; their cycle is abandoned as cancelled
        self._queue.clear()

        while self._active_downloads > 0:
            logger.info(f"Waiting for {self._active_downloads} active downloads to complete...")
            await asyncio.sleep(STOP_POLL_INTERVAL)

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        # Let a forced cycle observe the cancellation and unwind
        async with self._cycle_lock:
            pass

        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._manifest = None
        self._worker = None
        self._token = None
        self._stopping = None
        self._state = EngineState.STOPPED
        logger.info("Image sync service stopped")

    async def update_config(self, partial: Mapping[str, Any]) -> SyncConfiguration:
        """
        Replace the configuration with ``partial`` merged over it.

        The merge is validated first; on ConfigValidationError nothing
        changes. A running engine is stopped and restarted around the swap.
        """
        try:
            new_config = self._config.merged(partial)
        except ConfigValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

        was_running = self._state == EngineState.RUNNING
        if was_running:
            await self.stop()

        self._config = new_config
        self.ledger.retry_attempts = new_config.retry_attempts
        apply_log_level(new_config.log_level)

        if was_running:
            await self.start()

        logger.info("Configuration updated")
        return new_config

    async def force_sync_now(self) -> CycleReport:
        """
        Run a cycle immediately.

        Raises NotRunningError when stopped, without touching the network or
        filesystem. Cycle-level failures are raised to the caller.
        """
        if self._state != EngineState.RUNNING or self._token is None:
            raise NotRunningError("Service is not running")
        return await self._guarded_cycle(self._token, raise_errors=True)

    # Scheduling

    async def _timer_loop(self, token: CancelToken) -> None:
        interval = self._config.polling_interval
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + interval

        while not token.cancelled:
            try:
                await token.sleep(max(0.0, next_tick - loop.time()))
            except OperationCancelled:
                return

            if self._cycle_lock.locked():
                logger.debug("Previous cycle still running, skipping tick")
            else:
                await self._guarded_cycle(token)

            next_tick += interval
            now = loop.time()
            if now > next_tick:
                missed = math.ceil((now - next_tick) / interval)
                logger.debug(f"Cycle overran the polling interval; skipping {missed} tick(s)")
                next_tick += missed * interval

    async def _guarded_cycle(self, token: CancelToken, raise_errors: bool = False) -> CycleReport:
        async with self._cycle_lock:
            try:
                report = await self._run_cycle(token)
            except ImageSyncError as e:
                self._last_error = str(e)
                self.last_report = CycleReport(skipped_reason=str(e))
                logger.error(f"Sync failed: {e}")
                if raise_errors:
                    raise
                return self.last_report
            except Exception as e:
                self._last_error = str(e)
                self.last_report = CycleReport(skipped_reason=str(e))
                logger.exception("Unexpected error in sync cycle")
                if raise_errors:
                    raise
                return self.last_report
            self.last_report = report
            return report

    async def _run_cycle(self, token: CancelToken) -> CycleReport:
        """Fetch the manifest, drain the downloads, advance the watermark."""
        config = self._config
        report = CycleReport()

        if token.cancelled:
            report.cancelled = True
            return report

        try:
            if self.identity_provider is not None:
                identity = await token.run(self.identity_provider())
                if identity is None:
                    logger.warning("No authenticated user, skipping sync")
                    report.skipped_reason = "no authenticated user"
                    return report

            watermark = await self.get_last_sync_timestamp()
        except OperationCancelled:
            report.cancelled = True
            return report

        manifest = await self._manifest.fetch_since(watermark, config, token)
        report.dropped = manifest.dropped
        if manifest.cancelled:
            report.cancelled = True
            return report

        items: list[ImageItem] = []
        abandoned_timestamps: list[str] = []
        seen: set[str] = set()
        for item in manifest.items:
            if item.id in seen:
                continue
            seen.add(item.id)
            if self.ledger.is_abandoned(item.id):
                logger.debug(f"Skipping abandoned image {item.id}")
                abandoned_timestamps.append(item.timestamp)
                continue
            items.append(item)

        report.items_found = len(items)
        if not items:
            logger.info("No new images to sync")
            self._last_error = ""
            if abandoned_timestamps:
                await self._advance_watermark(watermark, abandoned_timestamps, report)
            return report

        logger.info(f"Found {len(items)} new images to download")

        cycle = _Cycle(config=config, token=token, report=report, pending={i.id for i in items})
        for item in items:
            self._queue.append((item, cycle))
        self._pump()

        try:
            await token.run(cycle.done.wait())
        except OperationCancelled:
            report.cancelled = True
            logger.info("Sync cycle cancelled before all downloads settled")
            return report

        timestamps = [item.timestamp for item in items] + abandoned_timestamps
        if not await self._advance_watermark(watermark, timestamps, report):
            return report

        self._last_error = ""
        logger.info(
            f"Sync cycle complete: {report.downloaded} downloaded, "
            f"{report.skipped_existing} already present, {report.abandoned} abandoned"
        )
        return report

    async def _advance_watermark(
        self, watermark: str | None, timestamps: list[str], report: CycleReport
    ) -> bool:
        """
        Persist the latest of ``watermark`` and ``timestamps``.

        The watermark never moves backwards: items older than the stored
        value leave it unchanged. Returns False if the write failed.
        """
        candidates = [watermark, *timestamps] if watermark else list(timestamps)
        new_watermark = latest_timestamp(candidates)
        report.watermark = new_watermark
        if new_watermark is None or new_watermark == watermark:
            return True

        try:
            await self.settings_store.set(LAST_SYNC_KEY, new_watermark)
        except StorageError as e:
            logger.error(f"Failed to update last sync timestamp: {e}")
            self._last_error = str(e)
            report.watermark = watermark
            return False

        pruned = self.ledger.prune_abandoned(lambda ts: is_before(ts, new_watermark))
        if pruned:
            logger.debug(f"Forgot {pruned} abandoned image(s) older than the watermark")
        return True

    # Download dispatch

    def _pump(self) -> None:
        """Start queued downloads until the concurrency cap is reached."""
        while self._queue:
            item, cycle = self._queue[0]
            if cycle.token.cancelled:
                self._queue.popleft()
                cycle.settle(item.id)
                continue
            if self._active_downloads >= cycle.config.max_concurrent_downloads:
                break

            self._queue.popleft()
            self._active_downloads += 1
            self._spawn(self._download(item, cycle))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _download(self, item: ImageItem, cycle: _Cycle) -> None:
        try:
            outcome = await self._worker.download(item, cycle.config, cycle.token)
        except Exception as e:
            logger.exception(f"Unexpected error downloading image {item.id}")
            outcome = DownloadFailure(reason=f"Unexpected error: {e}")
        finally:
            self._active_downloads -= 1

        self._handle_outcome(item, cycle, outcome)
        self._pump()

    def _handle_outcome(self, item: ImageItem, cycle: _Cycle, outcome: DownloadOutcome) -> None:
        if isinstance(outcome, DownloadSuccess):
            self.ledger.clear(item.id)
            if outcome.skipped:
                cycle.report.skipped_existing += 1
            else:
                cycle.report.downloaded += 1
            cycle.settle(item.id)
            return

        if isinstance(outcome, DownloadCancelled):
            cycle.settle(item.id)
            return

        attempts = self.ledger.record_failure(item.id)
        cycle.failures.setdefault(item.id, []).append(outcome.reason)
        logger.error(f"Failed to download image {item.id}: {outcome.reason}")

        if cycle.token.cancelled:
            cycle.settle(item.id)
            return

        if self.ledger.should_retry(item.id):
            logger.info(
                f"Scheduling retry {attempts + 1}/{cycle.config.retry_attempts} for image {item.id}"
            )
            self._pending_retries += 1
            self._spawn(self._retry_later(item, cycle))
            return

        self.ledger.abandon(item.id, item.timestamp)
        cycle.report.abandoned += 1
        reasons = "; ".join(cycle.failures.get(item.id, []))
        logger.warning(
            f"Max retry attempts reached for image {item.id}, abandoning it: {reasons}"
        )
        cycle.settle(item.id)

    async def _retry_later(self, item: ImageItem, cycle: _Cycle) -> None:
        try:
            await cycle.token.sleep(cycle.config.retry_delay)
        except OperationCancelled:
            cycle.settle(item.id)
            return
        finally:
            self._pending_retries -= 1

        self._queue.append((item, cycle))
        self._pump()
