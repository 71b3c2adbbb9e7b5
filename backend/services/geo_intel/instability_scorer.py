"""Country Instability Index (CII).

Composite 0-100 instability score per country, blending a structural
baseline with four decaying event components:

    unrest       - protests
    conflict     - armed-conflict events and conflict-keyword headlines
    security     - military flights/vessels in or near the country
    information  - internet outages, cyber incidents, cable advisories

Each component is an accumulator on a log scale: new signals push it up
(saturating at 100) and between updates it decays exponentially with a
configurable half-life.  A country is LEARNING for its first minutes of
observation unless its state was restored from cache.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional

from config import settings
from utils.clock import Clock, parse_iso, system_clock, to_iso

from .country_catalog import CountryCatalog
from .errors import CacheUnavailable
from .geo import haversine_km
from .scheduling import KeyedLocks
from .scoring_catalog import ScoringCatalog
from .signal_aggregator import Signal

if TYPE_CHECKING:
    from .cache import TieredCache

logger = logging.getLogger(__name__)

LEARNING = "learning"
ACTIVE = "active"

COMPONENTS = ("unrest", "conflict", "security", "information")
CACHE_KEY = "cii:table"

# Samples younger than this are not used as the 24h comparison point.
_TREND_MIN_SAMPLE_AGE = timedelta(hours=1)
# Counted signal ids are forgotten after this long.
_COUNTED_ID_TTL = timedelta(hours=48)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ComponentScores:
    unrest: float = 0.0
    conflict: float = 0.0
    security: float = 0.0
    information: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {name: round(getattr(self, name), 2) for name in COMPONENTS}


@dataclass
class CountryScore:
    """Instability score for a single country."""

    code: str
    name: str
    score: float  # 0-100
    level: str  # "low" | "normal" | "elevated" | "high" | "critical"
    trend: str  # "rising" | "stable" | "falling"
    change_24h: float
    components: ComponentScores
    last_updated: datetime
    learning: bool = False
    confidence: str = "normal"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "score": self.score,
            "level": self.level,
            "trend": self.trend,
            "change_24h": self.change_24h,
            "components": self.components.to_dict(),
            "last_updated": to_iso(self.last_updated),
            "learning": self.learning,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "CountryScore":
        components = row.get("components") or {}
        return cls(
            code=str(row["code"]),
            name=str(row.get("name") or row["code"]),
            score=float(row.get("score") or 0.0),
            level=str(row.get("level") or "low"),
            trend=str(row.get("trend") or "stable"),
            change_24h=float(row.get("change_24h") or 0.0),
            components=ComponentScores(**{name: float(components.get(name) or 0.0) for name in COMPONENTS}),
            last_updated=parse_iso(row.get("last_updated")) or datetime.now(timezone.utc),
            learning=bool(row.get("learning")),
            confidence=str(row.get("confidence") or "normal"),
        )


@dataclass
class CIIConfig:
    learning_minutes: float = 15.0
    half_life_hours: float = 6.0
    trend_threshold: float = 5.0
    history_days: int = 7
    security_radius_km: float = 500.0
    baseline_weight: float = 0.4
    component_weights: dict[str, float] = field(
        default_factory=lambda: {"unrest": 0.25, "conflict": 0.3, "security": 0.2, "information": 0.25}
    )
    component_scales: dict[str, float] = field(
        default_factory=lambda: {"unrest": 30.0, "conflict": 25.0, "security": 12.0, "information": 22.0}
    )
    component_types: dict[str, list[str]] = field(
        default_factory=lambda: {
            "unrest": ["protest"],
            "conflict": ["armed_conflict"],
            "security": ["military_flight", "military_vessel"],
            "information": ["internet_outage", "cyber_incident", "cable_advisory"],
        }
    )
    news_conflict_points: float = 0.5
    levels: dict[str, float] = field(
        default_factory=lambda: {"critical": 81.0, "high": 66.0, "elevated": 51.0, "normal": 31.0}
    )
    spike_threshold: float = 15.0

    @classmethod
    def from_settings(cls, scoring: Optional[ScoringCatalog] = None) -> "CIIConfig":
        weights = (scoring or ScoringCatalog()).cii()
        return cls(
            learning_minutes=settings.GEO_INTEL_CII_LEARNING_MINUTES,
            half_life_hours=settings.GEO_INTEL_CII_HALF_LIFE_HOURS,
            trend_threshold=settings.GEO_INTEL_CII_TREND_THRESHOLD,
            history_days=settings.GEO_INTEL_CII_HISTORY_DAYS,
            security_radius_km=settings.GEO_INTEL_CII_SECURITY_RADIUS_KM,
            baseline_weight=weights["baseline_weight"],
            component_weights=weights["component_weights"],
            component_scales=weights["component_scales"],
            component_types=weights["component_types"],
            news_conflict_points=weights["news_conflict_points"],
            levels=weights["levels"],
            spike_threshold=weights["spike_threshold"],
        )


@dataclass
class _CountryState:
    code: str
    first_seen: datetime
    last_decay_at: datetime
    state: str = LEARNING
    components: dict[str, float] = field(default_factory=lambda: {name: 0.0 for name in COMPONENTS})
    counted_ids: dict[str, datetime] = field(default_factory=dict)
    history: deque = field(default_factory=deque)  # (datetime, score)
    last_updated: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def decay(value: float, elapsed_seconds: float, half_life_seconds: float) -> float:
    """Exponential decay: ``value * 0.5 ** (elapsed / half_life)``."""
    if value <= 0.0:
        return 0.0
    if elapsed_seconds <= 0.0 or half_life_seconds <= 0.0:
        return value
    return value * math.pow(0.5, elapsed_seconds / half_life_seconds)


def accumulate(value: float, weight: float, scale: float) -> float:
    """Add ``weight`` to a log-scaled component, saturating at 100.

    A component holding ``scale * log1p(n)`` represents ``n`` weighted
    events; adding more events keeps the same curve so a burst of ten
    protests scores the same whether it arrives at once or one by one.
    """
    if weight <= 0.0 or scale <= 0.0:
        return min(100.0, max(0.0, value))
    implied = math.expm1(max(0.0, value) / scale)
    return min(100.0, scale * math.log1p(implied + weight))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class InstabilityScorer:
    """Computes and tracks Country Instability Index scores.

    Score formula:
        final = baseline_risk * baseline_weight + event_score * (1 - baseline_weight)

    where event_score is the weighted sum of the four components.  Each
    country key has a single writer (``KeyedLocks``) so countries recompute
    in parallel without interleaving updates to the same state.
    """

    def __init__(
        self,
        config: Optional[CIIConfig] = None,
        clock: Optional[Clock] = None,
        countries: Optional[CountryCatalog] = None,
        cache: Optional["TieredCache"] = None,
    ) -> None:
        self.config = config or CIIConfig.from_settings()
        self._clock = clock or system_clock
        self._countries = countries or CountryCatalog()
        self._cache = cache
        self._states: dict[str, _CountryState] = {}
        self._locks = KeyedLocks()
        self._hydrated = False
        self._type_to_component: dict[str, str] = {}
        for component, types in self.config.component_types.items():
            for kind in types:
                self._type_to_component[str(kind)] = component

    @property
    def half_life_seconds(self) -> float:
        return self.config.half_life_hours * 3600.0

    # -- Component scoring ---------------------------------------------------

    def component_for(self, signal: Signal) -> Optional[str]:
        return self._type_to_component.get(signal.signal_type.value)

    def _signal_weight(self, code: str, signal: Signal) -> float:
        return self._countries.event_multiplier(code) * (0.5 + 0.5 * signal.severity)

    def _affected_countries(self, signal: Signal, component: str) -> list[str]:
        codes: set[str] = set()
        if signal.country:
            codes.add(signal.country)
        if component == "security":
            for info in self._countries.all():
                if haversine_km(signal.latitude, signal.longitude, info.latitude, info.longitude) <= (
                    self.config.security_radius_km
                ):
                    codes.add(info.code)
        return sorted(codes)

    def _level(self, score: float) -> str:
        levels = self.config.levels
        if score >= levels.get("critical", 81.0):
            return "critical"
        if score >= levels.get("high", 66.0):
            return "high"
        if score >= levels.get("elevated", 51.0):
            return "elevated"
        if score >= levels.get("normal", 31.0):
            return "normal"
        return "low"

    def _composite(self, code: str, components: dict[str, float]) -> float:
        weights = self.config.component_weights
        event_score = sum(weights.get(name, 0.0) * min(100.0, max(0.0, components.get(name, 0.0))) for name in COMPONENTS)
        bw = min(1.0, max(0.0, self.config.baseline_weight))
        score = self._countries.baseline_risk(code) * bw + event_score * (1.0 - bw)
        return round(min(100.0, max(0.0, score)), 1)

    def _decayed(self, state: _CountryState, now: datetime) -> dict[str, float]:
        elapsed = (now - state.last_decay_at).total_seconds()
        return {name: decay(value, elapsed, self.half_life_seconds) for name, value in state.components.items()}

    def _compare_sample(self, state: _CountryState, now: datetime) -> Optional[float]:
        target = now - timedelta(hours=24)
        candidates = [(ts, score) for ts, score in state.history if ts <= now - _TREND_MIN_SAMPLE_AGE]
        if not candidates:
            return None
        _, score = min(candidates, key=lambda row: abs((row[0] - target).total_seconds()))
        return score

    def _trend(self, change: float) -> str:
        if change > self.config.trend_threshold:
            return "rising"
        if change < -self.config.trend_threshold:
            return "falling"
        return "stable"

    def _is_learning(self, state: _CountryState, now: datetime) -> bool:
        if state.state == ACTIVE:
            return False
        return now - state.first_seen < timedelta(minutes=self.config.learning_minutes)

    def _view(self, state: _CountryState, now: datetime) -> CountryScore:
        components = self._decayed(state, now)
        score = self._composite(state.code, components)
        previous = self._compare_sample(state, now)
        change = round(score - previous, 1) if previous is not None else 0.0
        learning = self._is_learning(state, now)
        return CountryScore(
            code=state.code,
            name=self._countries.country_name(state.code),
            score=score,
            level=self._level(score),
            trend=self._trend(change),
            change_24h=change,
            components=ComponentScores(**{name: round(components[name], 2) for name in COMPONENTS}),
            last_updated=state.last_updated or now,
            learning=learning,
            confidence="low" if learning else "normal",
        )

    # -- State mutation (caller holds the country lock) ----------------------

    def _state_for(self, code: str, now: datetime) -> _CountryState:
        state = self._states.get(code)
        if state is None:
            state = _CountryState(code=code, first_seen=now, last_decay_at=now)
            self._states[code] = state
            logger.debug("CII now tracking %s (learning)", code)
        return state

    def _apply_decay(self, state: _CountryState, now: datetime) -> None:
        if now <= state.last_decay_at:
            return
        state.components = self._decayed(state, now)
        state.last_decay_at = now

    def _recompute(self, state: _CountryState, now: datetime) -> CountryScore:
        if state.state == LEARNING and not self._is_learning(state, now):
            state.state = ACTIVE
            logger.info("CII learning complete for %s", state.code)
        state.last_updated = now
        view = self._view(state, now)
        state.history.append((now, view.score))
        cutoff = now - timedelta(days=self.config.history_days)
        while state.history and state.history[0][0] < cutoff:
            state.history.popleft()
        self._prune_counted(state, now - _COUNTED_ID_TTL)
        return view

    @staticmethod
    def _prune_counted(state: _CountryState, cutoff: datetime) -> None:
        # Insertion order is arrival order, so expired ids sit at the front.
        counted = state.counted_ids
        while counted:
            oldest = next(iter(counted))
            if counted[oldest] >= cutoff:
                break
            del counted[oldest]

    # -- Triggers ------------------------------------------------------------

    async def on_signal(self, signal: Signal) -> list[CountryScore]:
        """Fold one signal into every country it affects."""
        return await self.on_signals([signal])

    async def on_signals(self, signals: Iterable[Signal]) -> list[CountryScore]:
        per_country: dict[str, list[tuple[str, Signal]]] = {}
        for signal in signals:
            component = self.component_for(signal)
            if component is None:
                continue
            for code in self._affected_countries(signal, component):
                per_country.setdefault(code, []).append((component, signal))
        if not per_country:
            return []

        updated: list[CountryScore] = []
        for code in sorted(per_country):
            async with self._locks.lock(code):
                now = self._clock.now()
                state = self._state_for(code, now)
                self._apply_decay(state, now)
                for component, signal in per_country[code]:
                    if signal.signal_id in state.counted_ids:
                        continue
                    state.counted_ids[signal.signal_id] = now
                    state.components[component] = accumulate(
                        state.components[component],
                        self._signal_weight(code, signal),
                        self.config.component_scales.get(component, 20.0),
                    )
                updated.append(self._recompute(state, now))
        await self.persist()
        return updated

    async def on_news_conflict(self, headlines_by_country: dict[str, list[str]]) -> list[CountryScore]:
        """Fold conflict-keyword headlines (keyed for dedup) into the conflict component."""
        updated: list[CountryScore] = []
        for code in sorted(headlines_by_country):
            keys = [k for k in headlines_by_country[code] if k]
            if not keys:
                continue
            async with self._locks.lock(code):
                now = self._clock.now()
                state = self._state_for(code, now)
                self._apply_decay(state, now)
                fresh = [k for k in keys if f"news:{k}" not in state.counted_ids]
                if not fresh:
                    continue
                for key in fresh:
                    state.counted_ids[f"news:{key}"] = now
                weight = len(fresh) * self.config.news_conflict_points * self._countries.event_multiplier(code)
                state.components["conflict"] = accumulate(
                    state.components["conflict"], weight, self.config.component_scales.get("conflict", 25.0)
                )
                updated.append(self._recompute(state, now))
        if updated:
            await self.persist()
        return updated

    async def tick(self, now: Optional[datetime] = None) -> list[CountryScore]:
        """Apply decay to every tracked country and record a history sample."""
        updated: list[CountryScore] = []
        for code in sorted(self._states):
            async with self._locks.lock(code):
                current = now or self._clock.now()
                state = self._states[code]
                self._apply_decay(state, current)
                updated.append(self._recompute(state, current))
        if updated:
            await self.persist()
        return updated

    # -- Reads ---------------------------------------------------------------

    def get_score(self, code: str) -> Optional[CountryScore]:
        state = self._states.get(str(code or "").strip().upper())
        if state is None:
            return None
        return self._view(state, self._clock.now())

    def get_all_scores(self) -> list[CountryScore]:
        now = self._clock.now()
        scores = [self._view(state, now) for state in self._states.values()]
        scores.sort(key=lambda s: (-s.score, s.code))
        return scores

    def get_spikes(self) -> list[CountryScore]:
        """Countries whose 24h change crosses the spike threshold, or high and rising."""
        out: list[CountryScore] = []
        for s in self.get_all_scores():
            if s.learning:
                continue
            if abs(s.change_24h) >= self.config.spike_threshold:
                out.append(s)
            elif s.level in ("high", "critical") and s.trend == "rising":
                out.append(s)
        return out

    def baseline_deviation(self, code: str) -> Optional[float]:
        score = self.get_score(code)
        if score is None:
            return None
        return round(score.score - self._countries.baseline_risk(score.code), 2)

    def average_deviation(self) -> float:
        deviations = [
            max(0.0, s.score - self._countries.baseline_risk(s.code)) for s in self.get_all_scores()
        ]
        if not deviations:
            return 0.0
        return round(sum(deviations) / len(deviations), 2)

    def tracked_countries(self) -> list[str]:
        return sorted(self._states)

    def get_learning_progress(self) -> dict[str, Any]:
        now = self._clock.now()
        total = self.config.learning_minutes
        learning_states = [s for s in self._states.values() if self._is_learning(s, now)]
        if not self._states and not self._hydrated:
            return {"in_learning": True, "remaining_minutes": round(total, 1), "progress": 0.0}
        if not learning_states:
            return {"in_learning": False, "remaining_minutes": 0.0, "progress": 1.0}
        remaining = max(
            0.0,
            max(total - (now - s.first_seen).total_seconds() / 60.0 for s in learning_states),
        )
        progress = 1.0 - (remaining / total) if total > 0 else 1.0
        return {
            "in_learning": True,
            "remaining_minutes": round(remaining, 1),
            "progress": round(min(1.0, max(0.0, progress)), 3),
        }

    # -- Persistence ---------------------------------------------------------

    def export_state(self) -> dict[str, Any]:
        countries: dict[str, Any] = {}
        for code, state in self._states.items():
            countries[code] = {
                "state": state.state,
                "first_seen": to_iso(state.first_seen),
                "last_decay_at": to_iso(state.last_decay_at),
                "last_updated": to_iso(state.last_updated),
                "components": {name: round(value, 4) for name, value in state.components.items()},
                "history": [[to_iso(ts), score] for ts, score in state.history],
            }
        return {"countries": countries}

    def import_state(self, payload: Any, restored: bool = True) -> int:
        """Load exported state; restored countries skip learning mode."""
        rows = payload.get("countries") if isinstance(payload, dict) else None
        if not isinstance(rows, dict):
            return 0
        now = self._clock.now()
        loaded = 0
        for code, row in rows.items():
            if not isinstance(row, dict):
                continue
            try:
                first_seen = parse_iso(row.get("first_seen")) or now
                last_decay = parse_iso(row.get("last_decay_at")) or parse_iso(row.get("last_updated")) or now
                components = {name: 0.0 for name in COMPONENTS}
                for name, value in (row.get("components") or {}).items():
                    if name in components:
                        components[name] = min(100.0, max(0.0, float(value)))
                history: deque = deque()
                for item in row.get("history") or []:
                    ts = parse_iso(item[0])
                    if ts is not None:
                        history.append((ts, float(item[1])))
            except (TypeError, ValueError, IndexError) as exc:
                logger.warning("Skipping unreadable CII state for %s: %s", code, exc)
                continue
            self._states[str(code).upper()] = _CountryState(
                code=str(code).upper(),
                first_seen=first_seen,
                last_decay_at=min(last_decay, now),
                state=ACTIVE if restored else str(row.get("state") or LEARNING),
                components=components,
                history=history,
                last_updated=parse_iso(row.get("last_updated")),
            )
            loaded += 1
        return loaded

    async def persist(self) -> None:
        if self._cache is None:
            return
        await self._cache.set(CACHE_KEY, self.export_state())

    async def hydrate(self, cache: Optional["TieredCache"] = None) -> bool:
        """Restore the score table from cache; returns False on a cold start."""
        cache = cache or self._cache
        if cache is None:
            return False
        try:
            result = await cache.get(CACHE_KEY)
        except CacheUnavailable as exc:
            logger.warning("CII cache unavailable, starting in learning mode: %s", exc)
            self._states.clear()
            self._hydrated = False
            return False
        if result is None:
            return False
        loaded = self.import_state(result.value, restored=True)
        self._hydrated = loaded > 0
        logger.info("CII restored %d countries from %s tier", loaded, result.tier)
        return self._hydrated

    def get_health(self) -> dict[str, Any]:
        now = self._clock.now()
        return {
            "tracked_countries": len(self._states),
            "learning_countries": sorted(s.code for s in self._states.values() if self._is_learning(s, now)),
            "hydrated": self._hydrated,
            **self.get_learning_progress(),
        }
