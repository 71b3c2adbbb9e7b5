"""Three-tier read-through cache with stale-while-revalidate.

Lookup order is process memory, then the shared store, then the durable
store.  A durable hit (or an expired memory entry) is served immediately
as stale while exactly one background refresh per key revalidates it:
a value another process published to the shared store wins, otherwise
the value is recomputed.  Concurrent callers share the in-flight task.
Store failures are logged and skipped so a broken backend never blocks
a read.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from config import settings
from utils.clock import Clock, system_clock, to_iso

from .errors import CacheUnavailable, InsufficientData
from .interfaces import DurableStore, SharedCacheStore

logger = logging.getLogger(__name__)

MEMORY = "memory"
SHARED = "shared"
DURABLE = "durable"
COMPUTED = "computed"


@dataclass
class CacheResult:
    value: Any
    tier: str
    stale: bool
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {"tier": self.tier, "stale": self.stale, "updated_at": to_iso(self.updated_at)}


@dataclass
class _MemoryEntry:
    value: Any
    stored_at: float  # monotonic
    updated_at: datetime


class TieredCache:
    def __init__(
        self,
        memory_ttl_seconds: Optional[float] = None,
        shared_store: Optional[SharedCacheStore] = None,
        durable_store: Optional[DurableStore] = None,
        clock: Optional[Clock] = None,
        shared_ttl_seconds: Optional[float] = None,
    ) -> None:
        self.memory_ttl = float(
            memory_ttl_seconds if memory_ttl_seconds is not None else settings.GEO_INTEL_MEMORY_CACHE_TTL_SECONDS
        )
        self.shared_ttl = float(
            shared_ttl_seconds if shared_ttl_seconds is not None else settings.GEO_INTEL_SHARED_CACHE_TTL_SECONDS
        )
        self._shared = shared_store
        self._durable = durable_store
        self._clock = clock or system_clock
        self._memory: dict[str, _MemoryEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._closed = False
        self.stats: dict[str, int] = {
            "memory_hits": 0,
            "shared_hits": 0,
            "durable_hits": 0,
            "computes": 0,
            "background_refreshes": 0,
            "store_errors": 0,
        }

    # -- Store access (failures logged, never raised) -----------------------

    async def _shared_get(self, key: str) -> Optional[Any]:
        if self._shared is None:
            return None
        try:
            return await self._shared.get(key)
        except CacheUnavailable as exc:
            self.stats["store_errors"] += 1
            logger.warning("Shared cache unavailable for %s: %s", key, exc)
            return None

    async def _durable_get(self, key: str):
        if self._durable is None:
            return None
        try:
            return await self._durable.get(key)
        except CacheUnavailable as exc:
            self.stats["store_errors"] += 1
            logger.warning("Durable store unavailable for %s: %s", key, exc)
            return None

    async def _write_all(self, key: str, value: Any, shared_ttl: Optional[float]) -> None:
        now = self._clock.now()
        self._memory[key] = _MemoryEntry(value, self._clock.monotonic(), now)
        if self._shared is not None:
            try:
                await self._shared.set(key, value, shared_ttl if shared_ttl is not None else self.shared_ttl)
            except CacheUnavailable as exc:
                self.stats["store_errors"] += 1
                logger.warning("Shared cache write skipped for %s: %s", key, exc)
        if self._durable is not None:
            try:
                await self._durable.set(key, value)
            except CacheUnavailable as exc:
                self.stats["store_errors"] += 1
                logger.warning("Durable store write skipped for %s: %s", key, exc)

    # -- Compute / refresh ---------------------------------------------------

    async def _compute_and_store(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        shared_ttl: Optional[float],
    ) -> Any:
        self.stats["computes"] += 1
        value = await compute()
        await self._write_all(key, value, shared_ttl)
        return value

    async def _revalidate(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        shared_ttl: Optional[float],
    ) -> Any:
        # Another process may already have published a newer value.
        shared = await self._shared_get(key)
        if shared is not None:
            self.stats["shared_hits"] += 1
            self._memory[key] = _MemoryEntry(shared, self._clock.monotonic(), self._clock.now())
            return shared
        return await self._compute_and_store(key, compute, shared_ttl)

    def _start(self, key: str, work: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(work(), name=f"geo-cache:{key}")
        self._inflight[key] = task

        def _done(t: asyncio.Task, key: str = key) -> None:
            if self._inflight.get(key) is t:
                self._inflight.pop(key, None)
            if t.cancelled():
                return
            exc = t.exception()
            if isinstance(exc, InsufficientData):
                logger.debug("Cache refresh for %s skipped: %s", key, exc)
            elif exc is not None:
                logger.warning("Cache refresh for %s failed: %s", key, exc)

        task.add_done_callback(_done)
        return task

    def _refresh_in_background(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        shared_ttl: Optional[float],
    ) -> None:
        if self._closed:
            return
        if key in self._inflight and not self._inflight[key].done():
            return
        self.stats["background_refreshes"] += 1
        self._start(key, lambda: self._revalidate(key, compute, shared_ttl))

    # -- Public API ----------------------------------------------------------

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        shared_ttl: Optional[float] = None,
    ) -> CacheResult:
        entry = self._memory.get(key)
        if entry is not None:
            age = self._clock.monotonic() - entry.stored_at
            if age < self.memory_ttl:
                self.stats["memory_hits"] += 1
                return CacheResult(entry.value, MEMORY, stale=False, updated_at=entry.updated_at)
            self._refresh_in_background(key, compute, shared_ttl)
            return CacheResult(entry.value, MEMORY, stale=True, updated_at=entry.updated_at)

        shared = await self._shared_get(key)
        if shared is not None:
            self.stats["shared_hits"] += 1
            now = self._clock.now()
            self._memory[key] = _MemoryEntry(shared, self._clock.monotonic(), now)
            return CacheResult(shared, SHARED, stale=False, updated_at=now)

        durable = await self._durable_get(key)
        if durable is not None:
            self.stats["durable_hits"] += 1
            self._refresh_in_background(key, compute, shared_ttl)
            return CacheResult(durable.value, DURABLE, stale=True, updated_at=durable.updated_at)

        task = self._start(key, lambda: self._compute_and_store(key, compute, shared_ttl))
        value = await asyncio.shield(task)
        return CacheResult(value, COMPUTED, stale=False, updated_at=self._clock.now())

    async def get(self, key: str) -> Optional[CacheResult]:
        """Read through all tiers without computing.

        Raises ``CacheUnavailable`` only when nothing was found and every
        configured store failed.
        """
        entry = self._memory.get(key)
        if entry is not None:
            fresh = self._clock.monotonic() - entry.stored_at < self.memory_ttl
            return CacheResult(entry.value, MEMORY, stale=not fresh, updated_at=entry.updated_at)

        failures = 0
        stores = 0
        if self._shared is not None:
            stores += 1
            try:
                value = await self._shared.get(key)
            except CacheUnavailable as exc:
                failures += 1
                logger.warning("Shared cache unavailable for %s: %s", key, exc)
            else:
                if value is not None:
                    return CacheResult(value, SHARED, stale=False, updated_at=self._clock.now())
        if self._durable is not None:
            stores += 1
            try:
                durable = await self._durable.get(key)
            except CacheUnavailable as exc:
                failures += 1
                logger.warning("Durable store unavailable for %s: %s", key, exc)
            else:
                if durable is not None:
                    return CacheResult(durable.value, DURABLE, stale=True, updated_at=durable.updated_at)
        if stores and failures == stores:
            raise CacheUnavailable(f"no cache tier reachable for {key}")
        return None

    async def set(self, key: str, value: Any, shared_ttl: Optional[float] = None) -> None:
        await self._write_all(key, value, shared_ttl)

    def invalidate(self, key: str) -> None:
        """Drop the process-memory entry for ``key`` and cancel its in-flight refresh.

        Shared and durable tiers are untouched, so the next read falls through to them.
        """
        self._memory.pop(key, None)
        task = self._inflight.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Cancelled in-flight refresh for %s", key)

    def inflight_keys(self) -> list[str]:
        return sorted(k for k, t in self._inflight.items() if not t.done())

    async def wait_idle(self) -> None:
        """Wait for in-flight refreshes to settle."""
        tasks = [t for t in self._inflight.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        self._closed = True
        tasks = list(self._inflight.values())
        self._inflight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_health(self) -> dict[str, Any]:
        return {
            "memory_entries": len(self._memory),
            "inflight_refreshes": self.inflight_keys(),
            "memory_ttl_seconds": self.memory_ttl,
            "shared_store": type(self._shared).__name__ if self._shared is not None else None,
            "durable_store": type(self._durable).__name__ if self._durable is not None else None,
            **self.stats,
        }
