# =============================================================================
# Background Task Runner — Detached asyncio Tasks
# =============================================================================
#
# Runs fire-and-forget coroutines (query pipelines, side tasks, article
# generation) on the current event loop without the caller awaiting them.
#
# WHY NOT A BARE asyncio.create_task()?
# The event loop only keeps weak references to tasks, so a task nobody
# holds can be garbage-collected mid-flight, and an exception in a task
# nobody awaits is reported late or never. The runner:
#   1. keeps a strong reference until the task finishes
#   2. logs any exception the task raised (with traceback)
#   3. can wait for everything still running (drain) at shutdown, or at the
#      end of a Celery task that runs its own event loop
#
# No retries and no cancellation: a spawned coroutine runs to completion
# or failure.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Owns detached asyncio tasks and reports their failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Schedule `coro` on the running loop and return its task."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Spawned background task %s", task.get_name())
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(), exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self, timeout: float | None = None) -> None:
        """
        Wait for all running tasks, including ones spawned while waiting.

        Exceptions are already logged by the done callback and are not
        re-raised here.
        """
        deadline = None
        if timeout is not None:
            deadline = asyncio.get_running_loop().time() + timeout

        while self._tasks:
            remaining = None
            if deadline is not None:
                remaining = deadline - asyncio.get_running_loop().time()
                if remaining <= 0:
                    logger.warning(
                        "Drain timed out with %d background tasks still running",
                        len(self._tasks),
                    )
                    return
            await asyncio.wait(set(self._tasks), timeout=remaining)


# Process-wide runner for the API process
_runner: BackgroundTaskRunner | None = None


def get_background_runner() -> BackgroundTaskRunner:
    global _runner
    if _runner is None:
        _runner = BackgroundTaskRunner()
    return _runner
