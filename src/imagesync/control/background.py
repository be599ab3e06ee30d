"""
Background sync trigger.

Stands in for the platform's periodic background-fetch task: on a coarse
schedule (never more often than every 15 minutes) it asks the shared engine
for an immediate sync, as a backstop to the engine's own timer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from imagesync.config import SyncConfiguration
from imagesync.control.registry import DEFAULT_PURPOSE, EngineRegistry
from imagesync.errors import ImageSyncError

logger = logging.getLogger(__name__)

TASK_NAME = "background-image-sync"
MINIMUM_INTERVAL_SECONDS = 15 * 60


class BackgroundFetchResult(Enum):
    """Result reported back to the platform scheduler."""

    NEW_DATA = "new_data"
    NO_DATA = "no_data"
    FAILED = "failed"


class BackgroundSyncTask:
    """
    Periodic background trigger for a registered sync engine.

    The engine is looked up (or created from ``config``) in the registry on
    every run, so the trigger and the UI always drive the same instance.
    """

    def __init__(
        self,
        registry: EngineRegistry,
        config: SyncConfiguration | Mapping[str, Any] | None = None,
        purpose: str = DEFAULT_PURPOSE,
        minimum_interval: float = MINIMUM_INTERVAL_SECONDS,
    ):
        self.registry = registry
        self.config = config
        self.purpose = purpose
        self.minimum_interval = minimum_interval
        self._task: asyncio.Task[None] | None = None
        self.last_result: BackgroundFetchResult | None = None

    @property
    def is_registered(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> float:
        """Seconds between runs: the polling interval, but at least the minimum."""
        polling = self.minimum_interval
        if isinstance(self.config, SyncConfiguration):
            polling = self.config.polling_interval
        elif self.config is not None:
            raw = self.config.get("polling_interval_ms", self.config.get("pollingIntervalMs"))
            if raw is not None:
                polling = int(raw) / 1000
        return max(polling, self.minimum_interval)

    async def run_once(self) -> BackgroundFetchResult:
        """Perform one background sync and report the result."""
        try:
            engine = self.registry.get(self.purpose, self.config)
            report = await engine.force_sync_now()
        except ImageSyncError as e:
            logger.error(f"Background image sync failed: {e}")
            self.last_result = BackgroundFetchResult.FAILED
            return self.last_result
        except Exception:
            logger.exception("Unexpected error in background image sync")
            self.last_result = BackgroundFetchResult.FAILED
            return self.last_result

        if report.cancelled or report.skipped_reason:
            self.last_result = BackgroundFetchResult.FAILED
        elif report.downloaded or report.skipped_existing:
            self.last_result = BackgroundFetchResult.NEW_DATA
        else:
            self.last_result = BackgroundFetchResult.NO_DATA
        return self.last_result

    def register(self) -> bool:
        """Schedule periodic runs. Returns False if already registered."""
        if self.is_registered:
            return False
        self._task = asyncio.create_task(self._loop(), name=TASK_NAME)
        logger.info(f"Background image sync task registered (every {self.interval:.0f}s)")
        return True

    async def unregister(self) -> None:
        """Cancel periodic runs."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Background image sync task unregistered")

    async def update_config(self, config: SyncConfiguration | Mapping[str, Any]) -> None:
        """Re-register with a new configuration."""
        was_registered = self.is_registered
        await self.unregister()
        self.config = config
        if was_registered:
            self.register()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
