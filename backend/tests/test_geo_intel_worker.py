import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import build_engine, build_session_factory, create_tables
from services.geo_intel.engine import GeoIntelEngine, build_sql_engine
from workers import geo_intel_worker


class _Source:
    def __init__(self, name, records, category="signals"):
        self.name = name
        self.category = category
        self.records = records

    async def fetch(self):
        return list(self.records)


SIGNALS = [
    {"type": "protest", "lat": 50.45, "lon": 30.52, "timestamp": "2026-03-01T11:30:00Z"},
    {"type": "protest", "lat": 50.47, "lon": 30.52, "timestamp": "2026-03-01T11:31:00Z"},
    {"type": "military_flight", "lat": 50.5, "lon": 30.6, "timestamp": "2026-03-01T11:45:00Z"},
]


@pytest.mark.asyncio
async def test_run_cycle_polls_ticks_and_reports(clock):
    engine = GeoIntelEngine(clock=clock, debounce_seconds=10.0)
    engine.register_source(_Source("acled", SIGNALS))
    try:
        stats = await geo_intel_worker.run_cycle(engine)

        assert stats["polled"] == {"acled": 3}
        assert stats["buffered_signals"] == 3
        assert stats["convergence_zones"] == 1
        assert stats["countries_tracked"] >= 1
        assert stats["composite_score"] is not None
        assert stats["risk_status"] == "ok"
    finally:
        await engine.aclose()


@pytest.mark.asyncio
async def test_run_cycle_with_sql_tiers_writes_status(clock):
    db = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(db)
    engine = build_sql_engine(build_session_factory(db), clock=clock, debounce_seconds=10.0)
    engine.register_source(_Source("acled", SIGNALS))
    try:
        stats = await geo_intel_worker.run_cycle(engine)
        await geo_intel_worker._write_status(engine, {"running": True}, stats)

        status = await engine.durable_store.get(geo_intel_worker.STATUS_KEY)
        assert status.value["status"] == {"running": True}
        assert status.value["stats"]["buffered_signals"] == 3
        assert "risk:overview" in await engine.durable_store.keys()
    finally:
        await engine.aclose()
        await db.dispose()
