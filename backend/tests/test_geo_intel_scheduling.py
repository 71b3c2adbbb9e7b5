import sys
import asyncio
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.geo_intel.scheduling import Debouncer, IntervalScheduler, KeyedLocks, RefreshGuard


@pytest.mark.asyncio
async def test_refresh_guard_skips_overlapping_runs():
    guard = RefreshGuard("posture")
    release = asyncio.Event()
    runs = []

    async def _slow():
        runs.append("run")
        await release.wait()

    first = asyncio.create_task(guard.run(_slow))
    await asyncio.sleep(0)
    assert guard.running is True
    assert await guard.run(_slow) is False
    assert guard.skipped == 1

    release.set()
    assert await first is True
    assert runs == ["run"]
    assert guard.running is False


@pytest.mark.asyncio
async def test_debouncer_coalesces_a_burst_into_one_flush():
    flushed = []
    debouncer = Debouncer(0.02, flushed.append)

    debouncer.trigger("signals")
    debouncer.trigger("cii")
    debouncer.trigger("signals")
    assert debouncer.pending == {"signals", "cii"}

    await asyncio.sleep(0.08)

    assert flushed == [{"signals", "cii"}]
    assert debouncer.flush_count == 1
    assert debouncer.pending == set()


@pytest.mark.asyncio
async def test_debouncer_flush_and_cancel():
    flushed = []

    async def _callback(topics):
        flushed.append(sorted(topics))

    debouncer = Debouncer(10.0, _callback)
    debouncer.trigger("risk")
    await debouncer.flush()
    assert flushed == [["risk"]]

    debouncer.trigger("posture")
    debouncer.cancel()
    await debouncer.flush()
    assert flushed == [["risk"]]


@pytest.mark.asyncio
async def test_interval_scheduler_runs_until_cancelled_and_survives_failures():
    scheduler = IntervalScheduler()
    calls = {"ok": 0, "bad": 0}

    async def _ok():
        calls["ok"] += 1

    async def _bad():
        calls["bad"] += 1
        raise RuntimeError("tick failed")

    scheduler.every(0.01, _ok, "tick", run_immediately=True)
    scheduler.every(0.01, _bad, "broken", run_immediately=True)
    await asyncio.sleep(0.06)

    assert scheduler.jobs() == ["broken", "tick"]
    assert calls["ok"] >= 2
    assert calls["bad"] >= 2

    await scheduler.cancel_all()
    assert scheduler.jobs() == []
    settled = dict(calls)
    await asyncio.sleep(0.03)
    assert calls == settled


@pytest.mark.asyncio
async def test_rescheduling_a_name_replaces_the_job():
    scheduler = IntervalScheduler()

    async def _noop():
        return None

    first = scheduler.every(10.0, _noop, "risk")
    scheduler.every(10.0, _noop, "risk")
    await asyncio.sleep(0.01)
    assert first.done is True
    assert scheduler.jobs() == ["risk"]
    await scheduler.cancel_all()


@pytest.mark.asyncio
async def test_keyed_locks_are_independent_per_key():
    locks = KeyedLocks()
    async with locks.lock("UA"):
        assert locks.locked("UA") is True
        assert locks.locked("IR") is False
        async with locks.lock("IR"):
            assert locks.locked("IR") is True
    assert locks.lock("UA") is locks.lock("UA")
    assert len(locks) == 2
