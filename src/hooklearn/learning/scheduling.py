"""Cancellable scheduled tasks on the asyncio event loop.

The feedback monitor schedules periodic checkpoints and a delayed final
evaluation for every monitored optimization. Each schedule is a
ScheduledTask handle that can be cancelled explicitly when the optimization
concludes, so no stale timer can evaluate an already-concluded change.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from hooklearn.core.logging import get_logger

_logger = get_logger("learning.scheduling")

Callback = Callable[[], Awaitable[Any] | Any]


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Extract and log an exception from a completed task.

    Call this from ``add_done_callback`` handlers so that exceptions from
    background tasks are never silently lost.

    Returns:
        The exception if one was found, ``None`` if the task completed
        normally or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), task_name=task.get_name())
    return exc


def has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


async def _invoke(callback: Callback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class ScheduledTask:
    """Handle to one scheduled callback."""

    def __init__(self, name: str, task: asyncio.Task[None]) -> None:
        self.name = name
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def cancel(self) -> bool:
        """Cancel the schedule. Returns False if it already finished."""
        if self._task.done():
            return False
        # When called from the task's own callback, cancellation lands at
        # the next await, after the callback has returned.
        return self._task.cancel()

    async def wait(self) -> None:
        """Wait for the task to finish, swallowing its cancellation."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class Scheduler:
    """Creates and tracks ScheduledTasks on the running event loop.

    Callback errors are logged and never propagate: a failing periodic
    callback keeps its schedule, a failing delayed callback simply ends.
    """

    def __init__(self) -> None:
        self._tasks: set[ScheduledTask] = set()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks if not t.done)

    def call_later(self, delay: float, callback: Callback, *, name: str) -> ScheduledTask:
        """Run ``callback`` once after ``delay`` seconds.

        Raises:
            RuntimeError: If no event loop is running.
        """
        loop = asyncio.get_running_loop()

        async def _runner() -> None:
            await asyncio.sleep(delay)
            try:
                await _invoke(callback)
            except Exception as e:
                _logger.error("scheduled_callback_failed", task_name=name, error=str(e))

        return self._spawn(loop, _runner(), name)

    def call_every(
        self,
        interval: float,
        callback: Callback,
        *,
        name: str,
        stop_after: float | None = None,
    ) -> ScheduledTask:
        """Run ``callback`` every ``interval`` seconds until cancelled.

        Args:
            interval: Seconds between invocations. The first run happens
                after one interval.
            stop_after: Optional total lifetime in seconds.

        Raises:
            RuntimeError: If no event loop is running.
        """
        loop = asyncio.get_running_loop()

        async def _runner() -> None:
            deadline = loop.time() + stop_after if stop_after is not None else None
            while True:
                await asyncio.sleep(interval)
                if deadline is not None and loop.time() > deadline:
                    return
                try:
                    await _invoke(callback)
                except Exception as e:
                    _logger.error("scheduled_callback_failed", task_name=name, error=str(e))

        return self._spawn(loop, _runner(), name)

    def _spawn(
        self, loop: asyncio.AbstractEventLoop, coro: Coroutine[Any, Any, None], name: str
    ) -> ScheduledTask:
        task = loop.create_task(coro, name=name)
        handle = ScheduledTask(name, task)
        self._tasks.add(handle)

        def _on_done(t: asyncio.Task[None]) -> None:
            self._tasks.discard(handle)
            log_task_exception(t, _logger, "scheduled_task_died")

        task.add_done_callback(_on_done)
        return handle

    def cancel_all(self) -> int:
        """Cancel every pending task. Returns how many were cancelled."""
        cancelled = 0
        for handle in list(self._tasks):
            if handle.cancel():
                cancelled += 1
        return cancelled

    async def shutdown(self) -> None:
        """Cancel every scheduled task and wait for them to finish."""
        handles = list(self._tasks)
        self.cancel_all()
        for handle in handles:
            await handle.wait()
        self._tasks.clear()


__all__ = [
    "ScheduledTask",
    "Scheduler",
    "has_running_loop",
    "log_task_exception",
]
