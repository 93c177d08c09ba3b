"""Background tasks that must finish before the process exits.

Audit appends run after the HTTP response has been sent. They are kept in a
registry so shutdown can wait for them instead of dropping them; ``drain``
never cancels a task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Set

from . import metrics

logger = logging.getLogger("quorum_gateway.tasks")


class TrackedTasks:
    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        metrics.set_pending_audit_tasks(len(self._tasks))
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        metrics.set_pending_audit_tasks(len(self._tasks))
        if not task.cancelled() and task.exception() is not None:
            logger.error("background task %s failed", task.get_name(), exc_info=task.exception())

    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, grace_seconds: float = 10.0) -> int:
        """Wait up to ``grace_seconds`` for in-flight tasks. Returns how many are still running."""
        if not self._tasks:
            return 0
        logger.info("draining %d background task(s), grace %.1fs", len(self._tasks), grace_seconds)
        # asyncio.wait does not cancel on timeout.
        _, still_running = await asyncio.wait(set(self._tasks), timeout=max(0.0, float(grace_seconds)))
        for task in still_running:
            logger.warning("background task %s still running after shutdown grace period", task.get_name())
        return len(still_running)
