import sys
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from fastapi import FastAPI, HTTPException

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from api import routes_geo_intel
from services.geo_intel.engine import GeoIntelEngine

CLUSTER = [
    {"type": "protest", "lat": 50.45, "lon": 30.52, "timestamp": "2026-03-01T11:30:00Z"},
    {"type": "protest", "lat": 50.47, "lon": 30.52, "timestamp": "2026-03-01T11:31:00Z"},
    {"type": "protest", "lat": 50.49, "lon": 30.52, "timestamp": "2026-03-01T11:32:00Z"},
    {"type": "military_flight", "lat": 50.5, "lon": 30.6, "timestamp": "2026-03-01T11:45:00Z"},
]


def _app(engine=None):
    app = FastAPI()
    app.include_router(routes_geo_intel.router, prefix="/api")
    if engine is not None:
        app.state.geo_intel_engine = engine
    return app


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def test_get_engine_requires_a_started_engine():
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))
    with pytest.raises(HTTPException) as excinfo:
        routes_geo_intel.get_engine(request)
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_post_signals_accepts_single_or_list(clock):
    engine = GeoIntelEngine(clock=clock, debounce_seconds=10.0)
    try:
        single = await routes_geo_intel.post_signals(CLUSTER[0], engine)
        assert single == {"accepted": 1, "dropped": 0, "duplicates": 0}

        batch = await routes_geo_intel.post_signals(CLUSTER + [{"type": "unknown"}], engine)
        assert batch == {"accepted": 3, "dropped": 1, "duplicates": 1}

        zones = await routes_geo_intel.get_convergence_zones(engine)
        assert zones["total"] == 1
        assert zones["zones"][0]["signal_types"] == ["military_flight", "protest"]
    finally:
        await engine.aclose()


@pytest.mark.asyncio
async def test_country_routes_filter_and_404(clock):
    engine = GeoIntelEngine(clock=clock, debounce_seconds=10.0)
    try:
        await engine.ingest_signals(CLUSTER)

        listing = await routes_geo_intel.get_country_scores(min_score=0.0, limit=50, engine=engine)
        assert "UA" in {row["code"] for row in listing["scores"]}
        assert listing["learning"]["in_learning"] is True

        filtered = await routes_geo_intel.get_country_scores(min_score=100.0, limit=50, engine=engine)
        assert filtered["total"] == 0

        assert (await routes_geo_intel.get_country_score("ua", engine))["code"] == "UA"
        with pytest.raises(HTTPException) as excinfo:
            await routes_geo_intel.get_country_score("zz", engine)
        assert excinfo.value.status_code == 404
    finally:
        await engine.aclose()


@pytest.mark.asyncio
async def test_http_surface_end_to_end(clock):
    engine = GeoIntelEngine(clock=clock, debounce_seconds=10.0)
    app = _app(engine)
    try:
        async with _client(app) as client:
            resp = await client.post("/api/geo-intel/signals", json=CLUSTER)
            assert resp.status_code == 200
            assert resp.json()["accepted"] == 4

            risk = (await client.get("/api/geo-intel/risk")).json()
            assert risk["composite_score"] is not None
            assert risk["status"] in ("ok", "partial")

            alerts = (await client.get("/api/geo-intel/alerts", params={"hours": 6})).json()
            assert alerts["hours"] == 6
            assert [a["alert_type"] for a in alerts["alerts"]] == ["convergence"]

            assert (await client.get("/api/geo-intel/alerts", params={"hours": 0})).status_code == 422
            assert (await client.get("/api/geo-intel/alerts", params={"hours": 500})).status_code == 422
            assert (await client.get("/api/geo-intel/countries/ZZ")).status_code == 404

            posture = (await client.get("/api/geo-intel/posture")).json()
            assert posture["total"] == len(posture["theaters"])

            focal = (await client.get("/api/geo-intel/focal-points")).json()
            assert focal["focal_points"] == []

            health = (await client.get("/api/geo-intel/health")).json()
            assert health["status"] == "ok"
            assert health["signals"]["buffered"] == 4
    finally:
        await engine.aclose()


@pytest.mark.asyncio
async def test_routes_return_503_without_engine():
    async with _client(_app()) as client:
        resp = await client.get("/api/geo-intel/health")
    assert resp.status_code == 503
