from typing import Any, Awaitable, Callable, Optional, Set
from datetime import date, datetime
import asyncio
import time

import structlog

logger = structlog.get_logger(__name__)


class Clock:
    """Wall clock used for timestamps, day boundaries and hour-of-day heuristics"""

    def now(self) -> datetime:
        """Local time"""
        return datetime.now()

    def today(self) -> date:
        return self.now().date()

    def epoch_ms(self) -> int:
        return int(time.time() * 1000)

    def monotonic(self) -> float:
        return time.monotonic()


class TimerHandle:
    """Cancellable handle returned by Scheduler.call_later"""

    def __init__(self, handle: Optional[asyncio.TimerHandle] = None):
        self._handle = handle
        self.cancelled = False

    def cancel(self):
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()


class Scheduler:
    """Timer and background-task primitives on the running event loop"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        """Run callback after delay seconds"""

        loop = asyncio.get_running_loop()
        return TimerHandle(loop.call_later(delay, callback))

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until it finishes"""

        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed", error=str(error), exc_info=error)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every spawned task, including ones spawned while waiting"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class PeriodicTimer:
    """Re-arming timer that spawns a coroutine every interval"""

    def __init__(
        self,
        scheduler: Scheduler,
        interval: float,
        job: Callable[[], Awaitable[Any]],
        name: str = "periodic"
    ):
        self.scheduler = scheduler
        self.interval = interval
        self.job = job
        self.name = name
        self._handle: Optional[TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    def start(self):
        if self.active:
            return
        self._arm()

    def _arm(self):
        self._handle = self.scheduler.call_later(self.interval, self._fire)

    def _fire(self):
        self.scheduler.spawn(self._run())
        self._arm()

    async def _run(self):
        try:
            await self.job()
        except Exception as e:
            logger.warning("Periodic job failed", timer=self.name, error=str(e))

    def stop(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
