"""
Run-scoped cancellation signal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from imagesync.errors import OperationCancelled

T = TypeVar("T")


class CancelToken:
    """
    Cancellation signal shared by everything started during one run.

    ``stop()`` raises the token once; every suspension point awaited through
    ``run()`` or ``sleep()`` is then aborted with OperationCancelled.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
            if not task.done():
                task.cancel()
                # The aborted operation's own outcome is irrelevant now.
                await asyncio.gather(task, return_exceptions=True)
                raise_cancelled = True
            else:
                raise_cancelled = task.cancelled()

        if raise_cancelled:
            raise OperationCancelled()
        return task.result()

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early with OperationCancelled if the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise OperationCancelled()
