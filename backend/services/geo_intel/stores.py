"""Shared-cache and durable-store backends for the tiered cache.

The in-memory variants serve tests and single-process deployments; the
SQL variants persist to the ``geo_cache_entries`` and
``geo_durable_snapshots`` tables so several processes (API + worker)
share derived state and survive restarts.  Every backend failure is
surfaced as ``CacheUnavailable``.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models.database import GeoCacheEntry, GeoDurableSnapshot
from utils.clock import Clock, ensure_utc, system_clock

from .errors import CacheUnavailable
from .interfaces import DurableEntry

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySharedCache:
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or system_clock
        self._entries: dict[str, tuple[Any, datetime]] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailable("in-memory shared cache marked unavailable")

    async def get(self, key: str) -> Optional[Any]:
        self._check()
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock.now():
            self._entries.pop(key, None)
            return None
        return deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> bool:
        self._check()
        if ttl_seconds <= 0:
            return False
        self._entries[key] = (deepcopy(value), self._clock.now() + timedelta(seconds=ttl_seconds))
        return True


class InMemoryDurableStore:
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or system_clock
        self._entries: dict[str, DurableEntry] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailable("in-memory durable store marked unavailable")

    async def get(self, key: str) -> Optional[DurableEntry]:
        self._check()
        entry = self._entries.get(key)
        if entry is None:
            return None
        return DurableEntry(value=deepcopy(entry.value), updated_at=entry.updated_at)

    async def set(self, key: str, value: Any) -> bool:
        self._check()
        self._entries[key] = DurableEntry(value=deepcopy(value), updated_at=self._clock.now())
        return True

    def put(self, key: str, value: Any, updated_at: datetime) -> None:
        """Seed an entry with an explicit timestamp."""
        self._entries[key] = DurableEntry(value=deepcopy(value), updated_at=ensure_utc(updated_at))


# ---------------------------------------------------------------------------
# SQL (SQLAlchemy async)
# ---------------------------------------------------------------------------


class SqlSharedCache:
    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or system_clock

    async def get(self, key: str) -> Optional[Any]:
        now = _naive_utc(self._clock.now())
        try:
            async with self._session_factory() as session:
                row = await session.get(GeoCacheEntry, key)
                if row is None:
                    return None
                if row.expires_at <= now:
                    return None
                return row.payload
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"shared cache read failed for {key}: {exc}") from exc

    async def set(self, key: str, value: Any, ttl_seconds: float) -> bool:
        if ttl_seconds <= 0:
            return False
        now = _naive_utc(self._clock.now())
        try:
            async with self._session_factory() as session:
                await session.merge(
                    GeoCacheEntry(
                        key=key,
                        payload=value,
                        expires_at=now + timedelta(seconds=ttl_seconds),
                        updated_at=now,
                    )
                )
                await session.commit()
            return True
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"shared cache write failed for {key}: {exc}") from exc

    async def purge_expired(self) -> int:
        now = _naive_utc(self._clock.now())
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(GeoCacheEntry).where(GeoCacheEntry.expires_at <= now))
                await session.commit()
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"shared cache purge failed: {exc}") from exc


class SqlDurableStore:
    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or system_clock

    async def get(self, key: str) -> Optional[DurableEntry]:
        try:
            async with self._session_factory() as session:
                row = await session.get(GeoDurableSnapshot, key)
                if row is None:
                    return None
                return DurableEntry(value=row.payload, updated_at=ensure_utc(row.updated_at))
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable store read failed for {key}: {exc}") from exc

    async def set(self, key: str, value: Any) -> bool:
        try:
            async with self._session_factory() as session:
                await session.merge(
                    GeoDurableSnapshot(key=key, payload=value, updated_at=_naive_utc(self._clock.now()))
                )
                await session.commit()
            return True
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable store write failed for {key}: {exc}") from exc

    async def keys(self) -> list[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(GeoDurableSnapshot.key))
                return sorted(result.scalars().all())
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable store listing failed: {exc}") from exc
