import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.geo_intel.convergence_detector import ConvergenceConfig, ConvergenceDetector
from services.geo_intel.geo import haversine_km
from services.geo_intel.signal_aggregator import SignalAggregator, SignalAggregatorConfig


def _detector(countries, **overrides):
    return ConvergenceDetector(ConvergenceConfig(**overrides), countries=countries)


def _kyiv_cluster(make_signal):
    protests = [make_signal("protest", 50.45 + i * 0.05, 30.52, country="UA") for i in range(3)]
    flights = [make_signal("military_flight", 50.9 + i * 0.1, 30.9, country="UA") for i in range(2)]
    return protests + flights


def test_two_types_within_radius_form_one_zone(countries, make_signal, clock):
    detector = _detector(countries)
    signals = _kyiv_cluster(make_signal)

    zones = detector.detect(signals, now=clock.now())

    assert len(zones) == 1
    zone = zones[0]
    assert zone.signal_types == frozenset({"protest", "military_flight"})
    assert zone.total_signals == 5
    assert zone.countries == ["UA"]
    assert zone.region == "Ukraine"
    assert zone.score == 70.0
    assert zone.urgency == "high"
    assert sorted(zone.signal_ids) == sorted(s.signal_id for s in signals)
    assert zone.to_dict()["signal_types"] == ["military_flight", "protest"]


def test_single_type_never_converges(countries, make_signal, clock):
    detector = _detector(countries)
    signals = [s for s in _kyiv_cluster(make_signal) if s.signal_type.value == "protest"]
    assert detector.detect(signals, now=clock.now()) == []


def test_too_few_signals_do_not_converge(countries, make_signal, clock):
    detector = _detector(countries)
    signals = [make_signal("protest"), make_signal("military_flight")]
    assert detector.detect(signals, now=clock.now()) == []


def test_distant_signals_stay_apart(countries, make_signal, clock):
    detector = _detector(countries)
    signals = [
        make_signal("protest", 50.45, 30.52),
        make_signal("protest", 50.5, 30.6),
        make_signal("military_flight", 35.7, 51.4),
        make_signal("military_flight", 35.8, 51.5),
    ]
    assert detector.detect(signals, now=clock.now()) == []


def test_signals_outside_window_are_ignored(countries, make_signal, clock):
    detector = _detector(countries, window_hours=6.0)
    signals = [
        make_signal("protest", age_minutes=10),
        make_signal("protest", age_minutes=20),
        make_signal("military_flight", age_minutes=8 * 60),
    ]
    assert detector.detect(signals, now=clock.now()) == []


def test_chained_neighbours_never_stretch_a_zone_past_the_radius(countries, make_signal, clock):
    detector = _detector(countries)
    # Each hop is ~222 km on the equator; the chain spans over 1100 km.
    signals = [make_signal("protest", 0.0, float(lon)) for lon in (0, 2, 4, 6, 8)]
    signals.append(make_signal("military_flight", 0.0, 10.0))
    by_id = {s.signal_id: s for s in signals}

    zones = detector.detect(signals, now=clock.now())

    for zone in zones:
        assert zone.total_signals < len(signals)
        assert zone.radius_km <= 250.0
        members = [by_id[i] for i in zone.signal_ids]
        assert len({s.signal_type for s in members}) >= 2
        for s in members:
            assert haversine_km(zone.latitude, zone.longitude, s.latitude, s.longitude) <= 250.0


def test_far_end_of_a_chain_is_trimmed_from_the_zone(countries, make_signal, clock):
    detector = _detector(countries)
    cluster = _kyiv_cluster(make_signal)
    # ~200 km hops east of Kyiv: the first links to the cluster, the second only to the first.
    near = make_signal("protest", 50.45, 33.34, signal_id="east-near")
    far = make_signal("internet_outage", 50.45, 36.16, signal_id="east-far")

    zones = detector.detect(cluster + [near, far], now=clock.now())

    assert len(zones) == 1
    zone = zones[0]
    assert zone.total_signals == 6
    assert "east-near" in zone.signal_ids
    assert "east-far" not in zone.signal_ids
    assert zone.signal_types == frozenset({"protest", "military_flight"})
    assert zone.radius_km <= 250.0


def test_removing_one_type_removes_the_zone(countries, make_signal, clock):
    detector = _detector(countries)
    signals = _kyiv_cluster(make_signal)
    assert len(detector.detect(signals, now=clock.now())) == 1

    without_flights = [s for s in signals if s.signal_type.value != "military_flight"]
    assert detector.detect(without_flights, now=clock.now()) == []


def test_detect_is_deterministic_and_deduplicates_input(countries, make_signal, clock):
    detector = _detector(countries)
    signals = _kyiv_cluster(make_signal)
    first = detector.detect(signals, now=clock.now())
    second = detector.detect(list(reversed(signals)) + signals[:2], now=clock.now())
    assert [z.zone_id for z in first] == [z.zone_id for z in second]
    assert second[0].total_signals == 5


def test_refresh_reads_aggregator_and_feeds_summary(countries, make_signal, clock):
    aggregator = SignalAggregator(SignalAggregatorConfig(), clock=clock, countries=countries)
    detector = _detector(countries)
    aggregator.attach_convergence(detector)
    for signal in _kyiv_cluster(make_signal):
        aggregator.store(signal)

    zones = detector.refresh(aggregator, clock.now())

    assert len(zones) == 1
    assert detector.get_active_zones()[0].zone_id == zones[0].zone_id
    summary = aggregator.get_summary()
    assert len(summary["convergence_zones"]) == 1
    assert summary["convergence_zones"][0]["total_signals"] == 5


def test_urgency_thresholds(countries):
    detector = _detector(countries)
    assert detector.urgency(4, 10.0) == "critical"
    assert detector.urgency(2, 85.0) == "critical"
    assert detector.urgency(3, 10.0) == "high"
    assert detector.urgency(2, 55.0) == "elevated"
    assert detector.urgency(2, 40.0) == "watch"
