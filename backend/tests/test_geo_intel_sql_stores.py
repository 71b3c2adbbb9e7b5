import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import build_engine, build_session_factory, create_tables
from services.geo_intel.cache import DURABLE, SHARED, TieredCache
from services.geo_intel.stores import SqlDurableStore, SqlSharedCache


async def _session_factory():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    return engine, build_session_factory(engine)


@pytest.mark.asyncio
async def test_shared_cache_entries_expire(clock):
    engine, factory = await _session_factory()
    try:
        cache = SqlSharedCache(factory, clock)
        assert await cache.get("risk:overview") is None
        assert await cache.set("risk:overview", {"composite_score": 42}, 300) is True
        assert await cache.set("ignored", {"x": 1}, 0) is False

        assert await cache.get("risk:overview") == {"composite_score": 42}

        clock.advance(seconds=301)
        assert await cache.get("risk:overview") is None
        assert await cache.purge_expired() == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_shared_cache_overwrites_existing_key(clock):
    engine, factory = await _session_factory()
    try:
        cache = SqlSharedCache(factory, clock)
        await cache.set("zones", ["a"], 60)
        await cache.set("zones", ["b"], 60)
        assert await cache.get("zones") == ["b"]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_durable_store_keeps_last_known_good(clock):
    engine, factory = await _session_factory()
    try:
        store = SqlDurableStore(factory, clock)
        await store.set("cii:state", {"UA": {"unrest": 3.0}})
        clock.advance(hours=48)
        await store.set("posture:vessels:iran-theater", [])

        entry = await store.get("cii:state")
        assert entry.value == {"UA": {"unrest": 3.0}}
        assert entry.updated_at.tzinfo is not None
        assert (clock.now() - entry.updated_at).total_seconds() == pytest.approx(48 * 3600)
        assert await store.keys() == ["cii:state", "posture:vessels:iran-theater"]
        assert await store.get("missing") is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_tiered_cache_falls_back_to_sql_durable_tier(clock):
    engine, factory = await _session_factory()
    try:
        shared = SqlSharedCache(factory, clock)
        durable = SqlDurableStore(factory, clock)
        writer = TieredCache(60, shared_store=shared, durable_store=durable, clock=clock, shared_ttl_seconds=120)
        await writer.set("risk:overview", {"composite_score": 12})

        # A second process sees the shared copy first.
        reader = TieredCache(60, shared_store=shared, durable_store=durable, clock=clock, shared_ttl_seconds=120)
        hit = await reader.get("risk:overview")
        assert hit.tier == SHARED

        clock.advance(seconds=600)
        restarted = TieredCache(60, shared_store=shared, durable_store=durable, clock=clock, shared_ttl_seconds=120)
        hit = await restarted.get("risk:overview")
        assert hit.tier == DURABLE
        assert hit.value == {"composite_score": 12}
    finally:
        await engine.dispose()
