import sys
import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.geo_intel.cache import COMPUTED, DURABLE, MEMORY, SHARED, TieredCache
from services.geo_intel.errors import CacheUnavailable


def _cache(clock, shared_store=None, durable_store=None):
    return TieredCache(
        memory_ttl_seconds=60,
        shared_store=shared_store,
        durable_store=durable_store,
        clock=clock,
        shared_ttl_seconds=600,
    )


class _Compute:
    def __init__(self, value):
        self.value = value
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        return self.value


@pytest.mark.asyncio
async def test_cold_miss_computes_once_for_concurrent_callers(clock, shared_store, durable_store):
    cache = _cache(clock, shared_store, durable_store)
    compute = _Compute({"score": 42})

    pending = asyncio.gather(cache.get_or_compute("risk", compute), cache.get_or_compute("risk", compute))
    await asyncio.sleep(0)
    compute.release.set()
    first, second = await pending

    assert compute.calls == 1
    assert first.value == second.value == {"score": 42}
    assert first.tier == COMPUTED
    assert (await shared_store.get("risk")) == {"score": 42}
    assert (await durable_store.get("risk")).value == {"score": 42}


@pytest.mark.asyncio
async def test_concurrent_stale_reads_share_one_background_refresh(clock, shared_store, durable_store):
    durable_store.put("risk", {"score": 10}, updated_at=clock.now() - timedelta(hours=3))
    cache = _cache(clock, shared_store, durable_store)
    compute = _Compute({"score": 55})

    first, second = await asyncio.gather(
        cache.get_or_compute("risk", compute),
        cache.get_or_compute("risk", compute),
    )

    assert first.tier == second.tier == DURABLE
    assert first.stale is True and second.stale is True
    assert first.value == {"score": 10}
    assert cache.inflight_keys() == ["risk"]
    assert cache.stats["background_refreshes"] == 1

    compute.release.set()
    await cache.wait_idle()

    assert compute.calls == 1
    assert cache.inflight_keys() == []
    fresh = await cache.get_or_compute("risk", compute)
    assert fresh.tier == MEMORY
    assert fresh.stale is False
    assert fresh.value == {"score": 55}


@pytest.mark.asyncio
async def test_expired_memory_entry_is_served_stale_while_refreshing(clock):
    cache = _cache(clock)
    await cache.set("zones", ["a"])
    clock.advance(seconds=61)
    compute = _Compute(["b"])

    stale = await cache.get_or_compute("zones", compute)
    assert stale.value == ["a"]
    assert stale.stale is True

    compute.release.set()
    await cache.wait_idle()
    assert (await cache.get_or_compute("zones", compute)).value == ["b"]


@pytest.mark.asyncio
async def test_background_refresh_prefers_a_value_published_by_another_process(clock, shared_store, durable_store):
    durable_store.put("risk", {"score": 10}, updated_at=clock.now() - timedelta(hours=1))
    cache = _cache(clock, shared_store, durable_store)
    compute = _Compute({"score": 55})
    compute.release.set()

    stale = await cache.get_or_compute("risk", compute)
    assert stale.tier == DURABLE
    await shared_store.set("risk", {"score": 70}, 600)
    await cache.wait_idle()

    assert compute.calls == 0
    fresh = await cache.get_or_compute("risk", compute)
    assert fresh.tier == MEMORY
    assert fresh.value == {"score": 70}


@pytest.mark.asyncio
async def test_invalidate_drops_memory_and_cancels_the_inflight_refresh(clock, durable_store):
    cache = _cache(clock, durable_store=durable_store)
    await cache.set("risk", {"score": 5})
    clock.advance(seconds=61)
    compute = _Compute({"score": 9})

    assert (await cache.get_or_compute("risk", compute)).tier == MEMORY
    assert cache.inflight_keys() == ["risk"]

    cache.invalidate("risk")
    cache.invalidate("never-cached")
    assert cache.inflight_keys() == []
    assert cache.get_health()["memory_entries"] == 0

    # The next read falls through to the durable copy and revalidates from there.
    result = await cache.get_or_compute("risk", compute)
    assert result.tier == DURABLE
    assert result.stale is True
    assert result.value == {"score": 5}

    compute.release.set()
    await cache.wait_idle()
    assert compute.calls == 1
    assert (await cache.get_or_compute("risk", compute)).value == {"score": 9}


@pytest.mark.asyncio
async def test_shared_tier_hit_populates_memory(clock, shared_store):
    await shared_store.set("cii:table", {"countries": {}}, 600)
    cache = _cache(clock, shared_store=shared_store)

    result = await cache.get_or_compute("cii:table", _Compute(None))

    assert result.tier == SHARED
    assert cache.stats["shared_hits"] == 1
    assert (await cache.get("cii:table")).tier == MEMORY


@pytest.mark.asyncio
async def test_store_failures_are_logged_and_skipped(clock, shared_store, durable_store):
    shared_store.available = False
    cache = _cache(clock, shared_store, durable_store)
    compute = _Compute({"ok": True})
    compute.release.set()

    result = await cache.get_or_compute("risk", compute)

    assert result.value == {"ok": True}
    assert cache.stats["store_errors"] == 2
    assert (await durable_store.get("risk")).value == {"ok": True}


@pytest.mark.asyncio
async def test_get_raises_only_when_every_tier_is_down(clock, shared_store, durable_store):
    cache = _cache(clock, shared_store, durable_store)
    assert await cache.get("missing") is None

    shared_store.available = False
    durable_store.available = False
    with pytest.raises(CacheUnavailable):
        await cache.get("missing")


@pytest.mark.asyncio
async def test_aclose_cancels_inflight_refreshes(clock, durable_store):
    durable_store.put("risk", {"score": 1}, updated_at=clock.now())
    cache = _cache(clock, durable_store=durable_store)
    compute = _Compute({"score": 2})

    await cache.get_or_compute("risk", compute)
    assert cache.inflight_keys() == ["risk"]

    await cache.aclose()
    assert cache.inflight_keys() == []
    # Closed caches no longer start refreshes.
    await cache.get_or_compute("risk", compute)
    assert cache.inflight_keys() == []
