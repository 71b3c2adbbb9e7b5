"""Geo-intel interface contracts.

These protocols define the collaborators the engine is constructed with,
decoupling correlation logic from concrete feeds, cache backends and timers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol

SOURCE_CATEGORIES = ("signals", "news", "aircraft", "vessels")


class SignalSource(Protocol):
    """An independently polled upstream returning already-parsed records.

    ``category`` is one of ``signals`` (Signal or mapping), ``news``
    (NewsItem or mapping), ``aircraft`` and ``vessels`` (MilitaryAsset or
    mapping).
    """

    name: str
    category: str

    async def fetch(self) -> list[Any]:
        """Fetch the current batch of records."""


@dataclass(frozen=True)
class DurableEntry:
    value: Any
    updated_at: datetime


class SharedCacheStore(Protocol):
    """Cross-process cache with per-entry TTL."""

    async def get(self, key: str) -> Optional[Any]:
        """Return the live value for ``key`` or None."""

    async def set(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """Store ``value``; returns False when the write was skipped."""


class DurableStore(Protocol):
    """Last-known-good snapshots that survive restarts."""

    async def get(self, key: str) -> Optional[DurableEntry]:
        """Return the latest snapshot for ``key`` or None."""

    async def set(self, key: str, value: Any) -> bool:
        """Persist ``value``; returns False when the write was skipped."""


class ScheduleHandle(Protocol):
    def cancel(self) -> None:
        """Stop future invocations."""


class Scheduler(Protocol):
    def every(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
        name: str,
    ) -> ScheduleHandle:
        """Invoke ``callback`` every ``interval_seconds`` until cancelled."""

    async def cancel_all(self) -> None:
        """Cancel every scheduled job and wait for them to unwind."""
