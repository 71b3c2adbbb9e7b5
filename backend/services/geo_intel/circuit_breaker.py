"""Per-upstream circuit breakers with last-known-good fallback.

A breaker wraps every upstream call: failures are classified, counted and
recorded but never raised to the caller, who gets the last successful
value for the same fallback key instead.  After ``max_failures``
consecutive failures the breaker opens and stops calling the upstream
until ``cooldown_seconds`` have elapsed, then allows a single trial call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import settings
from utils.clock import Clock, system_clock

from .errors import GeoIntelError, UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

_TIMEOUT_EXCEPTIONS = (asyncio.TimeoutError, httpx.TimeoutException)


@dataclass
class BreakerResult:
    value: Any
    ok: bool
    from_fallback: bool
    error: Optional[GeoIntelError] = None


def classify_failure(source: str, exc: BaseException, timeout_seconds: float) -> GeoIntelError:
    """Map a raw upstream exception onto the engine's error types."""
    if isinstance(exc, (UpstreamTimeout, UpstreamError)):
        return exc
    if isinstance(exc, _TIMEOUT_EXCEPTIONS):
        return UpstreamTimeout(source, timeout_seconds)
    if isinstance(exc, httpx.HTTPStatusError):
        return UpstreamError(source, f"HTTP {exc.response.status_code}", cause=exc)
    return UpstreamError(source, str(exc) or type(exc).__name__, cause=exc)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        max_failures: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.name = name
        self.max_failures = max(1, int(max_failures if max_failures is not None else settings.GEO_INTEL_CB_MAX_FAILURES))
        self.cooldown_seconds = float(
            cooldown_seconds if cooldown_seconds is not None else settings.GEO_INTEL_CB_COOLDOWN_SECONDS
        )
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.GEO_INTEL_UPSTREAM_TIMEOUT_SECONDS
        )
        self._clock = clock or system_clock
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._trial_in_flight = False
        self._fallback: dict[str, Any] = {}
        self.total_calls = 0
        self.total_failures = 0

    # -- State ---------------------------------------------------------------

    @property
    def failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def cooldown_remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        elapsed = self._clock.monotonic() - self._opened_at
        return max(0.0, self.cooldown_seconds - elapsed)

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return CLOSED
        if self.cooldown_remaining() > 0:
            return OPEN
        return HALF_OPEN

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        self._opened_at = None
        self._last_error = None

    def _record_failure(self, error: GeoIntelError, was_trial: bool) -> None:
        self._consecutive_failures += 1
        self.total_failures += 1
        self._last_error = str(error)
        if was_trial or self._consecutive_failures >= self.max_failures:
            if self._opened_at is None or was_trial:
                logger.warning(
                    "Circuit breaker %s opened after %d failures: %s",
                    self.name,
                    self._consecutive_failures,
                    error,
                )
            self._opened_at = self._clock.monotonic()

    # -- Fallback values -----------------------------------------------------

    def cached(self, fallback_key: str = "default", default: Any = None) -> Any:
        return self._fallback.get(fallback_key, default)

    # -- Execution -----------------------------------------------------------

    async def call(
        self,
        fn: Callable[[], Awaitable[Any]],
        fallback_key: str = "default",
        default: Any = None,
        timeout_seconds: Optional[float] = None,
    ) -> BreakerResult:
        state = self.state
        if state == OPEN or (state == HALF_OPEN and self._trial_in_flight):
            logger.debug("Circuit breaker %s open, serving cached %s", self.name, fallback_key)
            return BreakerResult(self.cached(fallback_key, default), ok=False, from_fallback=True)

        was_trial = state == HALF_OPEN
        if was_trial:
            self._trial_in_flight = True
        timeout = float(timeout_seconds if timeout_seconds is not None else self.timeout_seconds)
        self.total_calls += 1
        try:
            value = await asyncio.wait_for(fn(), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_failure(self.name, exc, timeout)
            self._record_failure(error, was_trial)
            logger.error(
                "Upstream %s failed (failure %d): %s",
                self.name,
                self._consecutive_failures,
                error,
            )
            return BreakerResult(self.cached(fallback_key, default), ok=False, from_fallback=True, error=error)
        finally:
            if was_trial:
                self._trial_in_flight = False

        self._record_success()
        self._fallback[fallback_key] = value
        return BreakerResult(value, ok=True, from_fallback=False)

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        fallback_key: str = "default",
        default: Any = None,
        timeout_seconds: Optional[float] = None,
    ) -> Any:
        result = await self.call(fn, fallback_key, default=default, timeout_seconds=timeout_seconds)
        return result.value

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "failures": self._consecutive_failures,
            "max_failures": self.max_failures,
            "last_error": self._last_error,
            "opened_at": self._opened_at,
            "cooldown_remaining": round(self.cooldown_remaining(), 1),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
        }


class CircuitBreakerRegistry:
    """One breaker per upstream category, created on demand."""

    def __init__(
        self,
        max_failures: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._defaults = {
            "max_failures": max_failures,
            "cooldown_seconds": cooldown_seconds,
            "timeout_seconds": timeout_seconds,
        }
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, **overrides: Any) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            options = {**self._defaults, **{k: v for k, v in overrides.items() if v is not None}}
            breaker = CircuitBreaker(name, clock=self._clock, **options)
            self._breakers[name] = breaker
        return breaker

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {name: self._breakers[name].get_status() for name in sorted(self._breakers)}
