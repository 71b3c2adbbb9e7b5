"""Shared fixtures for geo-intel tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from datetime import datetime, timedelta, timezone

from utils.clock import ManualClock
from services.geo_intel.country_catalog import CountryCatalog
from services.geo_intel.signal_aggregator import Signal
from services.geo_intel.stores import InMemoryDurableStore, InMemorySharedCache

KYIV = (50.45, 30.52)
TEHRAN = (35.7, 51.4)


# ---------------------------------------------------------------------------
# Time and catalogs
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def countries():
    return CountryCatalog()


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


@pytest.fixture
def make_signal(clock):
    """Build a Signal at ``clock.now()`` minus ``age_minutes``.

    Ids are unique per call unless one is given explicitly.
    """
    counter = {"n": 0}

    def _make(
        signal_type="protest",
        lat=KYIV[0],
        lon=KYIV[1],
        *,
        age_minutes=0.0,
        severity=0.5,
        country=None,
        source="test",
        signal_id=None,
    ):
        counter["n"] += 1
        return Signal.create(
            signal_type,
            lat,
            lon,
            clock.now() - timedelta(minutes=age_minutes),
            severity=severity,
            source=source,
            country=country,
            signal_id=signal_id or f"sig-{signal_type}-{counter['n']}",
        )

    return _make


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def shared_store(clock):
    return InMemorySharedCache(clock)


@pytest.fixture
def durable_store(clock):
    return InMemoryDurableStore(clock)
