"""
Control surface for sync engines.

Shared by UI-driven control and the platform background trigger.
"""

from .background import (
    MINIMUM_INTERVAL_SECONDS,
    BackgroundFetchResult,
    BackgroundSyncTask,
)
from .registry import DEFAULT_PURPOSE, EngineRegistry

__all__ = [
    "DEFAULT_PURPOSE",
    "EngineRegistry",
    "BackgroundSyncTask",
    "BackgroundFetchResult",
    "MINIMUM_INTERVAL_SECONDS",
]
