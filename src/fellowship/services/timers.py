"""Scoped polling timers.

A view that polls (group list refresh, event list refresh, status checks)
opens a ``ViewScope`` and registers its intervals on it. Leaving the scope
cancels every task it started, so no timer outlives the view that owns it.

    async with ViewScope("events") as scope:
        scope.every(60, cache.fetch_events)
        scope.every(30, cache.refresh_statuses, run_immediately=False)
        await view_closed.wait()
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """Run a coroutine function every *interval* seconds until cancelled.

    A tick that raises is logged and the loop carries on; one failed
    refresh must not stop later ones. Ticks never overlap: the next sleep
    starts after the previous tick finishes.
    """

    def __init__(self, name: str, interval: float, tick: Tick, run_immediately: bool = True) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._tick = tick
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"poll:{self.name}")

    async def _run(self) -> None:
        logger.debug("Polling %s every %.1fs", self.name, self.interval)
        if not self._run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Polling tick %s failed", self.name)
            self.runs += 1
            await asyncio.sleep(self.interval)

    async def cancel(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped polling %s", self.name)


class ViewScope:
    """Owns the polling tasks of one active view.

    Use as an async context manager; ``close()`` is also safe to call
    directly and more than once.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: List[PeriodicTask] = []
        self._closed = False

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks)

    def every(self, interval: float, tick: Tick, run_immediately: bool = True, name: Optional[str] = None) -> PeriodicTask:
        """Start a periodic task owned by this scope."""
        if self._closed:
            raise RuntimeError(f"View scope {self.name!r} is already closed")
        task = PeriodicTask(
            f"{self.name}:{name or getattr(tick, '__name__', 'tick')}",
            interval,
            tick,
            run_immediately=run_immediately,
        )
        self._tasks.append(task)
        task.start()
        return task

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            await task.cancel()
        self._tasks.clear()

    async def __aenter__(self) -> "ViewScope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
