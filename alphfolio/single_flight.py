"""Collapse concurrent identical requests into a single upstream call."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class SingleFlight:
    """Track at most one in-flight task per key.

    The first caller for ``key`` starts ``fetch()`` as a task; every caller
    arriving while that task runs awaits the same task.  The key is released
    from a done-callback, i.e. before any waiter resumes, so the next call
    after completion always starts a fresh attempt.  Failures propagate to all
    waiters and are never cached here.
    """

    def __init__(self) -> None:
        self._pending: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        task = self._pending.get(key)
        return task is not None and not task.done()

    def pending(self) -> int:
        return sum(1 for task in self._pending.values() if not task.done())

    async def resolve(self, key: Hashable, fetch: Callable[[], Awaitable[Any]]) -> Any:
        task = self._pending.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(fetch())
            self._pending[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
        else:
            logger.debug("single-flight: joining in-flight request for %s", key)
        # a cancelled waiter must not cancel the shared fetch
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("single-flight: request for %s failed: %s", key, task.exception())


__all__ = ["SingleFlight"]
