import sys
import asyncio
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.geo_intel.cache import TieredCache
from services.geo_intel.instability_scorer import (
    CACHE_KEY,
    CIIConfig,
    InstabilityScorer,
    accumulate,
    decay,
)
from services.geo_intel.stores import InMemoryDurableStore, InMemorySharedCache


def _scorer(clock, countries, cache=None, **overrides):
    return InstabilityScorer(CIIConfig(**overrides), clock=clock, countries=countries, cache=cache)


def _cache(clock, shared=None, durable=None):
    return TieredCache(
        memory_ttl_seconds=60,
        shared_store=shared if shared is not None else InMemorySharedCache(clock),
        durable_store=durable if durable is not None else InMemoryDurableStore(clock),
        clock=clock,
        shared_ttl_seconds=600,
    )


def test_decay_halves_per_half_life():
    half_life = 6 * 3600.0
    assert decay(20.0, 3 * half_life, half_life) == pytest.approx(2.5)
    assert decay(20.0, 0.0, half_life) == 20.0
    assert decay(0.0, half_life, half_life) == 0.0


def test_accumulate_is_order_independent_and_saturates():
    one_by_one = 0.0
    for _ in range(10):
        one_by_one = accumulate(one_by_one, 1.0, 30.0)
    at_once = accumulate(0.0, 10.0, 30.0)
    assert one_by_one == pytest.approx(at_once)
    assert accumulate(90.0, 1e9, 30.0) == 100.0


def test_score_stays_within_bounds(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    burst = [make_signal(kind, country="UA", severity=1.0) for kind in ("protest", "armed_conflict") * 200]

    updated = asyncio.run(scorer.on_signals(burst))

    assert [s.code for s in updated] == ["UA"]
    score = scorer.get_score("UA")
    assert 0.0 <= score.score <= 100.0
    assert all(0.0 <= v <= 100.0 for v in score.components.to_dict().values())


def test_first_signal_puts_country_in_learning_mode(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    asyncio.run(scorer.on_signal(make_signal("protest", country="UA")))

    score = scorer.get_score("UA")
    assert score.learning is True
    assert score.confidence == "low"
    progress = scorer.get_learning_progress()
    assert progress["in_learning"] is True
    assert progress["remaining_minutes"] == pytest.approx(15.0)

    clock.advance(minutes=16)
    asyncio.run(scorer.tick())

    score = scorer.get_score("UA")
    assert score.learning is False
    assert score.confidence == "normal"
    assert scorer.get_learning_progress()["in_learning"] is False


def test_cold_start_reports_learning_before_any_signal(clock, countries):
    scorer = _scorer(clock, countries)
    assert scorer.get_learning_progress() == {"in_learning": True, "remaining_minutes": 15.0, "progress": 0.0}


def test_components_decay_monotonically_without_new_signals(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    asyncio.run(scorer.on_signals([make_signal("protest", country="UA") for _ in range(5)]))

    previous = scorer.get_score("UA")
    for _ in range(4):
        clock.advance(hours=3)
        asyncio.run(scorer.tick())
        current = scorer.get_score("UA")
        assert current.components.unrest < previous.components.unrest
        assert current.score <= previous.score
        previous = current


def test_unrest_decays_to_an_eighth_after_three_half_lives(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    asyncio.run(scorer.on_signal(make_signal("protest", country="UA")))
    start = scorer._states["UA"].components["unrest"]

    clock.advance(hours=18)
    asyncio.run(scorer.tick())

    assert scorer._states["UA"].components["unrest"] == pytest.approx(start / 8.0)


def test_same_signal_is_counted_once(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    signal = make_signal("protest", country="UA")
    asyncio.run(scorer.on_signal(signal))
    first = scorer._states["UA"].components["unrest"]
    asyncio.run(scorer.on_signal(signal))
    assert scorer._states["UA"].components["unrest"] == first


def test_counted_ids_expire_on_every_recompute(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    old = make_signal("protest", country="UA", signal_id="old")
    asyncio.run(scorer.on_signal(old))
    clock.advance(hours=30)
    asyncio.run(scorer.on_signal(make_signal("protest", country="UA", signal_id="recent")))
    assert list(scorer._states["UA"].counted_ids) == ["old", "recent"]

    clock.advance(hours=20)
    asyncio.run(scorer.tick())
    assert list(scorer._states["UA"].counted_ids) == ["recent"]

    clock.advance(hours=30)
    asyncio.run(scorer.tick())
    assert scorer._states["UA"].counted_ids == {}


def test_military_activity_reaches_neighbours_within_security_radius(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    asyncio.run(scorer.on_signal(make_signal("military_flight", 50.45, 30.52, country="UA")))

    tracked = scorer.tracked_countries()
    assert "UA" in tracked
    assert "BY" in tracked  # Minsk is ~430 km from Kyiv
    assert "PL" not in tracked
    assert scorer.get_score("BY").components.security > 0


def test_signal_types_without_component_are_ignored(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    assert asyncio.run(scorer.on_signal(make_signal("earthquake", country="UA"))) == []
    assert scorer.get_score("UA") is None


def test_trend_compares_against_a_sample_at_least_an_hour_old(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    asyncio.run(scorer.on_signal(make_signal("protest", country="UA")))
    assert scorer.get_score("UA").trend == "stable"

    clock.advance(hours=2)
    asyncio.run(scorer.on_signals([make_signal("protest", country="UA") for _ in range(50)]))

    score = scorer.get_score("UA")
    assert score.change_24h > 5.0
    assert score.trend == "rising"
    assert scorer.baseline_deviation("UA") == pytest.approx(score.score - 30.0, abs=0.01)


def test_news_conflict_headlines_count_once(clock, countries):
    scorer = _scorer(clock, countries)
    updated = asyncio.run(scorer.on_news_conflict({"IR": ["https://example.test/a", "https://example.test/b"]}))
    assert [s.code for s in updated] == ["IR"]
    conflict = scorer._states["IR"].components["conflict"]
    assert conflict > 0

    assert asyncio.run(scorer.on_news_conflict({"IR": ["https://example.test/a"]})) == []
    assert scorer._states["IR"].components["conflict"] == conflict


def test_state_survives_restart_through_durable_tier(clock, countries, make_signal):
    durable = InMemoryDurableStore(clock)
    first = _scorer(clock, countries, cache=_cache(clock, durable=durable))
    asyncio.run(first.on_signals([make_signal("protest", country="UA") for _ in range(3)]))
    expected = first.get_score("UA").score

    # Fresh process: empty memory and shared tiers, same durable store.
    second = _scorer(clock, countries, cache=_cache(clock, durable=durable))
    restored = asyncio.run(second.hydrate())

    assert restored is True
    score = second.get_score("UA")
    assert score.score == pytest.approx(expected, abs=0.1)
    assert score.learning is False
    assert second.get_health()["hydrated"] is True


def test_hydrate_with_unreachable_cache_starts_in_learning_mode(clock, countries):
    shared = InMemorySharedCache(clock)
    durable = InMemoryDurableStore(clock)
    shared.available = False
    durable.available = False
    scorer = _scorer(clock, countries, cache=_cache(clock, shared=shared, durable=durable))

    assert asyncio.run(scorer.hydrate()) is False
    assert scorer.tracked_countries() == []
    assert scorer.get_learning_progress()["in_learning"] is True


def test_export_import_round_trip_keeps_history(clock, countries, make_signal):
    scorer = _scorer(clock, countries)
    asyncio.run(scorer.on_signal(make_signal("protest", country="UA")))
    clock.advance(hours=1)
    asyncio.run(scorer.tick())

    other = _scorer(clock, countries)
    assert other.import_state(scorer.export_state()) == 1
    assert len(other._states["UA"].history) == 2
    assert other.import_state({"countries": "garbage"}) == 0
    assert CACHE_KEY == "cii:table"
