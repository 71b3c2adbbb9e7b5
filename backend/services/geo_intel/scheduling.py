"""Asyncio timing primitives: interval jobs, overlap guards, debouncing,
and per-key write serialization."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RefreshGuard:
    """In-flight flag: a run that overlaps a running one is skipped, not queued."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._running = False
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, fn: Callable[[], Awaitable[Any]]) -> bool:
        if self._running:
            self.skipped += 1
            logger.debug("Refresh %s already in flight; skipping", self.name)
            return False
        self._running = True
        try:
            await fn()
        finally:
            self._running = False
        return True


class ScheduledJob:
    def __init__(self, name: str, task: asyncio.Task) -> None:
        self.name = name
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class IntervalScheduler:
    """Runs async callbacks on fixed intervals until cancelled.

    Each job owns a ``RefreshGuard`` so a slow tick never overlaps the next.
    Callback failures are logged and the loop continues.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}

    def every(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
        name: str,
        run_immediately: bool = False,
    ) -> ScheduledJob:
        existing = self._jobs.pop(name, None)
        if existing is not None:
            existing.cancel()
        guard = RefreshGuard(name)
        task = asyncio.create_task(self._loop(interval_seconds, callback, guard, run_immediately), name=f"geo-intel:{name}")
        job = ScheduledJob(name, task)
        self._jobs[name] = job
        return job

    async def _loop(
        self,
        interval: float,
        callback: Callable[[], Awaitable[Any]],
        guard: RefreshGuard,
        run_immediately: bool,
    ) -> None:
        if not run_immediately:
            await asyncio.sleep(interval)
        while True:
            try:
                await guard.run(callback)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled job %s failed", guard.name)
            await asyncio.sleep(interval)

    def jobs(self) -> list[str]:
        return sorted(name for name, job in self._jobs.items() if not job.done)

    async def cancel_all(self) -> None:
        jobs = list(self._jobs.values())
        self._jobs.clear()
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.gather(*(job._task for job in jobs), return_exceptions=True)


class Debouncer:
    """Coalesces bursts of ``trigger()`` calls into one flush.

    Pending topics accumulate in a single slot; a timer flushes them
    ``delay`` seconds after the first trigger of a burst.
    """

    def __init__(self, delay: float, callback: Callable[[set[str]], Any]) -> None:
        self.delay = delay
        self._callback = callback
        self._pending: set[str] = set()
        self._timer: Optional[asyncio.Task] = None
        self.flush_count = 0

    @property
    def pending(self) -> set[str]:
        return set(self._pending)

    def trigger(self, topic: str = "changed") -> None:
        self._pending.add(topic)
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._fire())

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay)
        self._timer = None
        await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return
        topics, self._pending = self._pending, set()
        self.flush_count += 1
        try:
            result = self._callback(topics)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Debounced callback failed for topics %s", sorted(topics))

    def cancel(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._pending.clear()


class KeyedLocks:
    """One ``asyncio.Lock`` per key so independent keys update in parallel."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
