"""Per-key fan-in locks.

The first caller for a key starts the operation; anyone else asking
for the same key while it runs awaits that same task instead of
starting a duplicate. The entry disappears as soon as the task settles.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyLockManager:
    """Cooperative per-key mutual exclusion for a single event loop."""

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    def is_locked(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def with_lock(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` unless one is already in flight for ``key``.

        Concurrent callers for the same key all receive the first
        caller's result (or its exception). Cancelling a waiter does
        not cancel the shared operation.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(operation())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._release(key, done))
        else:
            logger.debug("Joining in-flight operation for %s", key)
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved; every waiter may have been cancelled
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Operation for %s failed: %s", key, task.exception())
