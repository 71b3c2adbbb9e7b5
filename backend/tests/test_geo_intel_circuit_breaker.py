import sys
import asyncio
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.geo_intel.circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    CircuitBreaker,
    CircuitBreakerRegistry,
    classify_failure,
)
from services.geo_intel.errors import UpstreamError, UpstreamTimeout


class _Upstream:
    def __init__(self, fail=True, value=None):
        self.fail = fail
        self.value = value if value is not None else ["ok"]
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("upstream exploded")
        return list(self.value)


def _breaker(clock, **overrides):
    return CircuitBreaker(
        "acled",
        max_failures=overrides.get("max_failures", 3),
        cooldown_seconds=overrides.get("cooldown_seconds", 60.0),
        timeout_seconds=overrides.get("timeout_seconds", 1.0),
        clock=clock,
    )


def test_success_caches_last_known_good(clock):
    breaker = _breaker(clock)
    upstream = _Upstream(fail=False, value=["a", "b"])

    result = asyncio.run(breaker.call(upstream.fetch, fallback_key="signals"))

    assert result.ok is True
    assert result.from_fallback is False
    assert result.value == ["a", "b"]
    assert breaker.cached("signals") == ["a", "b"]


def test_failure_serves_cached_value_without_raising(clock):
    breaker = _breaker(clock)
    upstream = _Upstream(fail=False, value=["a"])
    asyncio.run(breaker.call(upstream.fetch, fallback_key="signals"))

    upstream.fail = True
    result = asyncio.run(breaker.call(upstream.fetch, fallback_key="signals", default=[]))

    assert result.ok is False
    assert result.from_fallback is True
    assert result.value == ["a"]
    assert isinstance(result.error, UpstreamError)
    assert breaker.failures == 1
    assert breaker.state == CLOSED


def test_open_breaker_skips_io_until_cooldown_elapses(clock):
    breaker = _breaker(clock, max_failures=2, cooldown_seconds=60.0)
    upstream = _Upstream(fail=True)

    for _ in range(2):
        asyncio.run(breaker.call(upstream.fetch, default=[]))
    assert breaker.state == OPEN
    assert upstream.calls == 2

    for _ in range(5):
        result = asyncio.run(breaker.call(upstream.fetch, default=[]))
        assert result.value == []
        assert result.error is None
    assert upstream.calls == 2

    clock.advance(seconds=61)
    assert breaker.state == HALF_OPEN

    upstream.fail = False
    result = asyncio.run(breaker.call(upstream.fetch, default=[]))
    assert result.ok is True
    assert upstream.calls == 3
    assert breaker.state == CLOSED
    assert breaker.failures == 0


def test_failed_trial_call_reopens_immediately(clock):
    breaker = _breaker(clock, max_failures=2, cooldown_seconds=30.0)
    upstream = _Upstream(fail=True)
    for _ in range(2):
        asyncio.run(breaker.call(upstream.fetch))

    clock.advance(seconds=31)
    asyncio.run(breaker.call(upstream.fetch))

    assert upstream.calls == 3
    assert breaker.state == OPEN
    assert breaker.cooldown_remaining() == pytest.approx(30.0)


def test_timeout_counts_as_failure(clock):
    breaker = _breaker(clock, timeout_seconds=0.01)

    async def _slow():
        await asyncio.sleep(1.0)
        return ["late"]

    result = asyncio.run(breaker.call(_slow, default=[]))

    assert result.ok is False
    assert isinstance(result.error, UpstreamTimeout)
    assert breaker.get_status()["last_error"] == str(result.error)


def test_classify_failure_maps_http_errors():
    request = httpx.Request("GET", "https://feeds.example.test/events")
    response = httpx.Response(503, request=request)
    status_error = httpx.HTTPStatusError("unavailable", request=request, response=response)

    assert "HTTP 503" in str(classify_failure("acled", status_error, 5.0))
    assert isinstance(classify_failure("acled", httpx.ReadTimeout("slow"), 5.0), UpstreamTimeout)
    assert isinstance(classify_failure("acled", ValueError("bad json"), 5.0), UpstreamError)


def test_registry_hands_out_one_breaker_per_name(clock):
    registry = CircuitBreakerRegistry(max_failures=4, cooldown_seconds=10, timeout_seconds=2, clock=clock)
    first = registry.get("signals")
    assert registry.get("signals") is first
    assert first.max_failures == 4
    assert registry.get("news", max_failures=1).max_failures == 1

    status = registry.get_status()
    assert sorted(status) == ["news", "signals"]
    assert status["signals"]["state"] == CLOSED
    assert set(status["signals"]) == {
        "name",
        "state",
        "failures",
        "max_failures",
        "last_error",
        "opened_at",
        "cooldown_remaining",
        "total_calls",
        "total_failures",
    }
