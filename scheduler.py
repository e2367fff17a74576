"""Deferred task execution for expiry notices and media deletion.

Tasks live in a min-heap keyed by fire time. The clock is injectable so tests
can advance a virtual clock and call ``run_due()`` instead of sleeping.
"""
import asyncio
import heapq
import itertools
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from blob_store import BlobStore
from constants import BURN_BLOB_GRACE
from logging_config import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Awaitable[None]]


class ScheduledTask:
    def __init__(self, fire_at: float, callback: Callback, label: str = ""):
        self.fire_at = fire_at
        self.callback = callback
        self.label = label
        self.cancelled = False
        self.done = False

    def cancel(self) -> bool:
        if self.done or self.cancelled:
            return False
        self.cancelled = True
        return True

    def __repr__(self):
        return f"ScheduledTask({self.label!r}, fire_at={self.fire_at:.3f})"


class Scheduler:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._heap: List[Tuple[float, int, ScheduledTask]] = []
        self._seq = itertools.count()
        self._wakeup: Optional[asyncio.Event] = None
        self._runner: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return sum(1 for _, _, task in self._heap if not task.cancelled)

    def call_later(self, delay: float, callback: Callback, label: str = "") -> ScheduledTask:
        task = ScheduledTask(self.clock() + max(delay, 0), callback, label)
        heapq.heappush(self._heap, (task.fire_at, next(self._seq), task))
        logger.debug(f"Scheduled {label or 'task'} in {delay}s")
        if self._wakeup is not None:
            self._wakeup.set()
        return task

    def _pop_due(self) -> List[ScheduledTask]:
        now = self.clock()
        due = []
        while self._heap and self._heap[0][0] <= now:
            _, _, task = heapq.heappop(self._heap)
            if not task.cancelled:
                due.append(task)
        return due

    async def run_due(self) -> int:
        """Fire every task whose time has come; returns how many ran."""
        due = self._pop_due()
        for task in due:
            task.done = True
            try:
                await task.callback()
            except Exception as e:
                logger.error(f"Scheduled {task.label or 'task'} failed: {e}", exc_info=True)
        return len(due)

    def _next_delay(self) -> Optional[float]:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(self._heap[0][0] - self.clock(), 0)

    async def run_forever(self):
        self._wakeup = asyncio.Event()
        logger.info("Scheduler started")
        try:
            while True:
                await self.run_due()
                self._wakeup.clear()
                delay = self._next_delay()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info(f"Scheduler stopped with {self.pending} pending tasks")
            raise
        finally:
            self._wakeup = None

    def start(self):
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run_forever())

    async def stop(self):
        if self._runner is None:
            return
        self._runner.cancel()
        try:
            await self._runner
        except asyncio.CancelledError:
            pass
        self._runner = None


class MediaDeletionScheduler:
    """Arms one deferred deletion per stored blob."""

    def __init__(self, scheduler: Scheduler, blobs: BlobStore, burn_grace: float = BURN_BLOB_GRACE):
        self.scheduler = scheduler
        self.blobs = blobs
        self.burn_grace = burn_grace
        self._pending: Dict[str, ScheduledTask] = {}

    def delay_for(self, ttl: int) -> float:
        # burn-after-reading images get a grace window so slow clients can still render them
        return self.burn_grace if ttl == 0 else ttl

    def schedule(self, filename: str, ttl: int) -> ScheduledTask:
        self.cancel(filename)
        delay = self.delay_for(ttl)

        async def _fire():
            self._pending.pop(filename, None)
            await self._delete(filename, ttl)

        task = self.scheduler.call_later(delay, _fire, label=f"delete {filename}")
        self._pending[filename] = task
        return task

    async def _delete(self, filename: str, ttl: int):
        if await self.blobs.delete(filename):
            if ttl == 0:
                logger.info(f"Burn-after-reading: deleted {filename}")
            else:
                logger.info(f"TTL expired: deleted {filename}")
        else:
            logger.debug(f"Scheduled deletion found {filename} already gone")

    def cancel(self, filename: str) -> bool:
        task = self._pending.pop(filename, None)
        if task is None:
            return False
        return task.cancel()

    def is_scheduled(self, filename: str) -> bool:
        return filename in self._pending
