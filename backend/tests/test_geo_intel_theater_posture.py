import sys
import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.geo_intel.circuit_breaker import CircuitBreakerRegistry
from services.geo_intel.errors import MalformedRecord
from services.geo_intel.stores import InMemoryDurableStore
from services.geo_intel.theater_catalog import TheaterCatalog
from services.geo_intel.theater_posture import MilitaryAsset, PostureConfig, TheaterPostureEngine

IRAN = "iran-theater"


def _engine(clock, countries, durable=None, **overrides):
    config = PostureConfig(
        trend_window=overrides.get("trend_window", 3),
        trend_threshold_percent=10.0,
        vessel_cache_max_age_seconds=1800.0,
        vessel_retry_schedule=overrides.get("vessel_retry_schedule", [30.0, 60.0, 90.0, 120.0]),
    )
    return TheaterPostureEngine(TheaterCatalog(countries=countries), config=config, clock=clock, durable_store=durable)


def _aircraft(asset_id, asset_type, lat=35.7, lon=55.0, operator="usaf"):
    return MilitaryAsset(asset_id, "aircraft", asset_type, lat, lon, operator=operator)


def _vessel(asset_id, asset_type, lat=26.5, lon=52.0, operator="usn"):
    return MilitaryAsset(asset_id, "vessel", asset_type, lat, lon, operator=operator)


def _strike_package():
    return [_aircraft(f"b{i}", "bomber") for i in range(2)] + [_aircraft(f"f{i}", "fighter") for i in range(5)]


def test_bombers_make_theater_strike_capable_and_elevated(clock, countries):
    engine = _engine(clock, countries)
    asyncio.run(engine.refresh(_strike_package(), []))

    summary = engine.get_summary(IRAN)
    assert summary.bombers == 2
    assert summary.fighters == 5
    assert summary.total_aircraft == 7
    assert summary.strike_capable is True
    assert summary.posture_level == "elevated"
    assert summary.target_nation == "Iran"
    assert summary.by_operator == {"usaf": 7}


def test_three_bombers_are_critical(clock, countries):
    engine = _engine(clock, countries)
    asyncio.run(engine.refresh([_aircraft(f"b{i}", "bomber") for i in range(3)], []))
    assert engine.get_summary(IRAN).posture_level == "critical"


def test_quiet_theater_is_normal(clock, countries):
    engine = _engine(clock, countries)
    asyncio.run(engine.refresh([_aircraft("t1", "tanker")], []))
    summary = engine.get_summary(IRAN)
    assert summary.posture_level == "normal"
    assert summary.strike_capable is False
    assert summary.target_nation is None
    assert engine.count_by_level()["normal"] == len(engine.get_summaries())


def test_vessel_counts_fall_back_to_recent_cache(clock, countries):
    engine = _engine(clock, countries)
    asyncio.run(engine.refresh([], [_vessel("cvn", "carrier"), _vessel("ddg", "destroyer")]))
    assert engine.get_summary(IRAN).carriers == 1
    assert engine.awaiting_live_vessels is False

    clock.advance(minutes=20)
    asyncio.run(engine.refresh([], [], vessels_ok=False))
    summary = engine.get_summary(IRAN)
    assert summary.vessels_from_cache is True
    assert summary.carriers == 1
    assert summary.destroyers == 1
    assert summary.strike_capable is True
    assert engine.awaiting_live_vessels is True

    clock.advance(minutes=15)
    asyncio.run(engine.refresh([], [], vessels_ok=False))
    summary = engine.get_summary(IRAN)
    assert summary.vessels_from_cache is False
    assert summary.total_vessels == 0


def test_failed_vessel_query_stales_only_the_theaters_it_covered(clock, countries):
    engine = _engine(clock, countries)

    async def _gulf():
        return [_vessel("ddg", "destroyer")]

    async def _pacific():
        return [_vessel("ff1", "frigate", lat=27.0, lon=122.0)]

    vessels, failed = asyncio.run(engine.collect_vessels({"gulf-ais": _gulf, "pacific-ais": _pacific}))
    assert failed == []
    asyncio.run(engine.refresh([], vessels))
    assert engine.theaters_for(["gulf-ais"]) == {IRAN}
    assert engine.theaters_for(["taiwan-theater", "unknown-key"]) == {"taiwan-theater"}

    clock.advance(minutes=10)
    pacific = [_vessel("ff1", "frigate", lat=27.0, lon=122.0), _vessel("ff2", "frigate", lat=27.2, lon=122.4)]
    asyncio.run(engine.refresh([], pacific, stale_theaters=engine.theaters_for(["gulf-ais"])))

    iran = engine.get_summary(IRAN)
    assert iran.vessels_from_cache is True
    assert iran.destroyers == 1
    taiwan = engine.get_summary("taiwan-theater")
    assert taiwan.vessels_from_cache is False
    assert taiwan.frigates == 2
    assert engine.awaiting_live_vessels is True


def test_vessel_cache_survives_restart_via_durable_store(clock, countries):
    durable = InMemoryDurableStore(clock)
    durable.put(
        f"posture:vessels:{IRAN}",
        {"carriers": 1, "submarines": 2},
        updated_at=clock.now() - timedelta(minutes=10),
    )
    engine = _engine(clock, countries, durable=durable)
    asyncio.run(engine.refresh([], []))

    summary = engine.get_summary(IRAN)
    assert summary.vessels_from_cache is True
    assert summary.carriers == 1
    assert summary.submarines == 2
    assert summary.total_vessels == 3


def test_trend_compares_window_means(clock, countries):
    engine = _engine(clock, countries, trend_window=1)
    asyncio.run(engine.refresh([_aircraft(f"t{i}", "tanker") for i in range(5)], []))
    assert engine.get_summary(IRAN).trend == "stable"

    asyncio.run(engine.refresh([_aircraft(f"t{i}", "tanker") for i in range(6)], []))
    summary = engine.get_summary(IRAN)
    assert summary.trend == "rising"
    assert summary.change_percent == 20

    asyncio.run(engine.refresh([_aircraft(f"t{i}", "tanker") for i in range(3)], []))
    assert engine.get_summary(IRAN).trend == "falling"


def test_summaries_are_ranked_by_level(clock, countries):
    engine = _engine(clock, countries)
    taiwan = [_aircraft(f"tw{i}", "fighter", lat=24.0, lon=120.0) for i in range(2)]
    asyncio.run(engine.refresh(_strike_package() + taiwan, []))

    summaries = engine.get_summaries()
    assert summaries[0].theater_id == IRAN
    assert engine.get_summary("taiwan-theater").total_aircraft == 2
    payload = summaries[0].to_dict()
    assert payload["posture_level"] == "elevated"
    assert payload["computed_at"].endswith("Z")


def test_asset_from_mapping_validates_records():
    asset = MilitaryAsset.from_mapping({"icao24": "ae1234", "type": "Bomber", "lat": 30.0, "lon": 50.0}, kind="aircraft")
    assert asset.asset_id == "ae1234"
    assert asset.asset_type == "bomber"

    with pytest.raises(MalformedRecord):
        MilitaryAsset.from_mapping({"id": "x", "lat": 30.0, "lon": 50.0})
    with pytest.raises(MalformedRecord):
        MilitaryAsset.from_mapping({"lat": 30.0, "lon": 50.0}, kind="vessel")
    with pytest.raises(MalformedRecord):
        MilitaryAsset.from_mapping({"id": "x", "lat": 130.0, "lon": 50.0}, kind="vessel")


@pytest.mark.asyncio
async def test_collect_isolates_failing_queries(clock, countries):
    engine = _engine(clock, countries)

    async def _ok():
        return [{"id": "v1", "type": "frigate", "lat": 26.5, "lon": 52.0}, {"bad": "record"}]

    async def _boom():
        raise RuntimeError("feed down")

    breakers = CircuitBreakerRegistry(max_failures=3, cooldown_seconds=60, timeout_seconds=1, clock=clock)
    assets, failed = await engine.collect_vessels({"gulf": _ok, "med": _boom}, breakers)

    assert [a.asset_id for a in assets] == ["v1"]
    assert assets[0].kind == "vessel"
    assert failed == ["med"]
    assert breakers.get("med").failures == 1


@pytest.mark.asyncio
async def test_reaugment_retries_until_vessels_arrive(clock, countries):
    engine = _engine(clock, countries, vessel_retry_schedule=[0.01, 0.02, 0.03])
    await engine.refresh(_strike_package(), [], vessels_ok=False)
    assert engine.awaiting_live_vessels is True

    calls = {"n": 0}

    async def _fetch():
        calls["n"] += 1
        if calls["n"] == 1:
            return []
        return [_vessel("cvn", "carrier")]

    task = engine.schedule_vessel_reaugment(_fetch)
    assert engine.schedule_vessel_reaugment(_fetch) is task
    assert await task is True

    assert calls["n"] == 2
    summary = engine.get_summary(IRAN)
    assert summary.carriers == 1
    assert summary.bombers == 2
    assert engine.awaiting_live_vessels is False
    await engine.aclose()


@pytest.mark.asyncio
async def test_reaugment_gives_up_after_schedule(clock, countries):
    engine = _engine(clock, countries, vessel_retry_schedule=[0.01, 0.02])
    await engine.refresh([], [], vessels_ok=False)

    async def _fetch():
        raise RuntimeError("still down")

    assert await engine.schedule_vessel_reaugment(_fetch) is False
    assert engine.awaiting_live_vessels is True
