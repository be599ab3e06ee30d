"""
Retry ledger: per-item attempt counts for failed downloads.
"""

from __future__ import annotations

import threading
from collections.abc import Callable


class RetryLedger:
    """
    In-memory record of failed attempts per item id.

    An id whose count has reached ``retry_attempts`` is never retried; the
    engine abandons it, which drops the count and remembers the id (with
    its manifest timestamp) so a later manifest cannot enqueue it again.
    Abandoned ids are kept until the watermark passes their timestamp, so
    the set is bounded by the items the source can still return. Nothing
    here is persisted.
    """

    def __init__(self, retry_attempts: int):
        self.retry_attempts = retry_attempts
        self._attempts: dict[str, int] = {}
        self._abandoned: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def should_retry(self, item_id: str) -> bool:
        """True iff recorded attempts are below the retry budget."""
        with self._lock:
            if item_id in self._abandoned:
                return False
            return self._attempts.get(item_id, 0) < self.retry_attempts

    def record_failure(self, item_id: str) -> int:
        """Count a failed attempt and return the new total."""
        with self._lock:
            count = self._attempts.get(item_id, 0) + 1
            self._attempts[item_id] = count
            return count

    def clear(self, item_id: str) -> None:
        """Forget an item after it succeeded."""
        with self._lock:
            self._attempts.pop(item_id, None)

    def abandon(self, item_id: str, timestamp: str | None = None) -> None:
        """Drop the item permanently."""
        with self._lock:
            self._attempts.pop(item_id, None)
            self._abandoned[item_id] = timestamp

    def prune_abandoned(self, is_settled: Callable[[str | None], bool]) -> int:
        """
        Forget abandoned ids whose timestamp ``is_settled`` accepts.

        Called once the watermark has moved past them; returns how many
        were dropped.
        """
        with self._lock:
            settled = [i for i, ts in self._abandoned.items() if is_settled(ts)]
            for item_id in settled:
                del self._abandoned[item_id]
            return len(settled)

    def is_abandoned(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._abandoned

    def attempts(self, item_id: str) -> int:
        with self._lock:
            return self._attempts.get(item_id, 0)

    @property
    def abandoned(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._abandoned)

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._attempts

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)
