"""Deferred asyncio tasks with cancellation handles.

Background work (the initial subscription sync, debounced re-syncs) is
scheduled through :class:`TaskScheduler` instead of bare ``create_task`` so
that callers can cancel it and tests can see what was scheduled without
waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


class ScheduledTask:
    """Handle for one scheduled unit of work."""

    def __init__(self, name: str, delay: float, task: asyncio.Task) -> None:
        self.name = name
        self.delay = delay
        self._task = task

    @property
    def task(self) -> asyncio.Task:
        return self._task

    def cancel(self) -> bool:
        """Cancel the work if it has not finished. Returns True if cancelled."""
        return self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    def cancelled(self) -> bool:
        return self._task.cancelled()

    async def wait(self) -> Any:
        """Wait for completion and return the result (``None`` if cancelled)."""
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._task.cancelled():
                return None
            raise


class TaskScheduler:
    """Runs coroutine factories after a delay on the running event loop.

    Parameters
    ----------
    sleep:
        Awaitable sleep used for the delay. Tests inject one that returns
        immediately.
    """

    def __init__(self, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep
        self._tasks: set[ScheduledTask] = set()

    @property
    def pending(self) -> list[ScheduledTask]:
        return [t for t in self._tasks if not t.done()]

    def schedule(
        self,
        factory: TaskFactory,
        delay: float = 0.0,
        name: Optional[str] = None,
    ) -> ScheduledTask:
        """Run ``await factory()`` after *delay* seconds.

        Exceptions raised by the work are logged, never re-raised into the
        loop. Must be called from inside a running event loop.
        """
        label = name or getattr(factory, "__name__", "task")
        task = asyncio.get_running_loop().create_task(
            self._run(factory, delay, label), name=label
        )
        handle = ScheduledTask(label, delay, task)
        self._tasks.add(handle)
        task.add_done_callback(lambda _t: self._tasks.discard(handle))
        logger.debug("Scheduled %s in %.1fs", label, delay)
        return handle

    async def aclose(self) -> None:
        """Cancel all pending work and wait for it to unwind."""
        pending = self.pending
        for handle in pending:
            handle.cancel()
        if pending:
            await asyncio.gather(*(h.task for h in pending), return_exceptions=True)

    async def _run(self, factory: TaskFactory, delay: float, label: str) -> Any:
        if delay > 0:
            await self._sleep(delay)
        try:
            return await factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled task %s failed", label)
            return None
