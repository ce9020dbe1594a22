"""Background task tracking.

Session handles spawn several long-lived tasks (stream readers, exit waiters,
timeout watchdogs, remote stream pumps). Every one of them goes through a
TaskRegistry so failures are logged and shutdown can cancel what is left.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Owns the background tasks of one manager, session or connection.

    A finished task drops out of the registry on its own. An exception raised by
    a task is logged with its traceback, since nobody may ever await it.

    Example:
        registry = TaskRegistry()
        registry.spawn(pump_output(), name="session-1-stdout")
        await registry.shutdown(timeout=5.0)
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()

    def spawn(self, coro: Coroutine[object, object, T], name: str | None = None) -> asyncio.Task[T]:
        """Schedule `coro` as a tracked task and return it."""
        task = asyncio.create_task(coro, name=name or getattr(coro, "__qualname__", None))
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._forget)  # type: ignore[arg-type]
        logger.debug("Spawned %s (%d tracked)", task.get_name(), len(self._tasks))
        return task

    def _forget(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def task_count(self) -> int:
        return len(self._tasks)

    async def shutdown(self, timeout: float = 5.0) -> int:
        """Cancel every tracked task and wait for them to unwind.

        Args:
            timeout: Seconds to wait for cancelled tasks to finish

        Returns:
            Number of tasks still pending when the timeout expired.
        """
        live = [task for task in self._tasks if not task.done()]
        if not live:
            return 0

        logger.debug("Cancelling %d background tasks", len(live))
        for task in live:
            task.cancel()

        _, pending = await asyncio.wait(live, timeout=timeout)
        for task in pending:
            logger.warning("Task %s did not stop within %.1fs", task.get_name(), timeout)
        return len(pending)
