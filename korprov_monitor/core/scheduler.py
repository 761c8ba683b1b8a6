"""
Cancellable scheduling primitives for the polling loops.

- RepeatingTask: Disposable handle for "run callback every N seconds"
- InFlightTasks: Tracks fire-and-forget request tasks so they can be cancelled

A tick never waits for the work started by an earlier tick; callbacks are
expected to spawn their own tasks.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class RepeatingTask:
    """
    Runs a synchronous callback on a fixed interval until disposed.

    Exceptions raised by the callback are logged and the schedule continues.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Any],
        *,
        immediate: bool = False,
        name: str = "repeating-task",
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")

        self.interval = interval
        self.name = name
        self._callback = callback
        self._immediate = immediate
        self._ticks = 0
        self._disposed = False
        self._task: asyncio.Task | None = asyncio.get_running_loop().create_task(self._run(), name=name)

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def ticks(self) -> int:
        return self._ticks

    async def _run(self) -> None:
        try:
            if self._immediate:
                self._fire()
            while not self._disposed:
                await asyncio.sleep(self.interval)
                if self._disposed:
                    break
                self._fire()
        except asyncio.CancelledError:
            logger.debug(f"[{self.name}] Cancelled after {self._ticks} ticks")

    def _fire(self) -> None:
        self._ticks += 1
        try:
            self._callback()
        except Exception as e:
            logger.error(f"[{self.name}] Tick {self._ticks} failed: {e}")

    def dispose(self) -> None:
        """Stop the schedule. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None


def schedule_repeating(
    interval: float,
    callback: Callable[[], Any],
    *,
    immediate: bool = False,
    name: str = "repeating-task",
) -> RepeatingTask:
    """Schedule `callback` every `interval` seconds on the running loop."""
    return RepeatingTask(interval, callback, immediate=immediate, name=name)


class InFlightTasks:
    """Set of running request tasks owned by one poller."""

    def __init__(self, name: str = "in-flight"):
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] Request task failed: {exc}")

    def cancel_all(self) -> int:
        """
        Cancel every running task and return how many were cancelled.

        The calling task is never cancelled, so a request task may tear down
        its own poller.
        """
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        pending = [task for task in self._tasks if not task.done() and task is not current]
        for task in pending:
            task.cancel()
        self._tasks.clear()
        return len(pending)
