"""Multi-signal geographic convergence detection.

Detects when 2+ different signal types cluster within a shared radius and
time window.  Signals are bucketed into grid cells roughly one detection
radius wide; candidate pairs are only checked between a cell and its
neighbours.  Connected components of the proximity graph are then split
until every member lies within the radius of its group centroid, and the
groups that still mix enough signal types become zones.
Detection is a pure function of the signal set: the same input always
yields the same zones in the same order.
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable, Optional

from config import settings
from utils.clock import to_iso

from .country_catalog import CountryCatalog
from .geo import KM_PER_DEGREE_LAT, grid_cell, haversine_km
from .scoring_catalog import ScoringCatalog
from .signal_aggregator import Signal

if TYPE_CHECKING:
    from .signal_aggregator import SignalAggregator

logger = logging.getLogger(__name__)

URGENCY_ORDER = {"watch": 0, "elevated": 1, "high": 2, "critical": 3}

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ConvergenceZone:
    """A geographic area where multiple signal types converge."""

    zone_id: str
    latitude: float
    longitude: float
    radius_km: float
    signal_types: frozenset[str]
    total_signals: int
    region: str
    first_detected: datetime
    last_signal_at: datetime
    urgency: str  # "watch" | "elevated" | "high" | "critical"
    score: float  # 0-100
    countries: list[str] = field(default_factory=list)
    signal_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "zone_id": self.zone_id,
            "latitude": round(self.latitude, 4),
            "longitude": round(self.longitude, 4),
            "radius_km": self.radius_km,
            "signal_types": sorted(self.signal_types),
            "total_signals": self.total_signals,
            "region": self.region,
            "first_detected": to_iso(self.first_detected),
            "last_signal_at": to_iso(self.last_signal_at),
            "urgency": self.urgency,
            "score": self.score,
            "countries": list(self.countries),
        }


@dataclass
class ConvergenceConfig:
    radius_km: float = 250.0
    window_hours: float = 24.0
    min_types: int = 2
    min_signals: int = 3
    type_points: float = 25.0
    signal_points: float = 2.0
    signal_points_cap: float = 25.0
    severity_points: float = 20.0
    critical_types: int = 4
    critical_score: float = 80.0
    high_types: int = 3
    high_score: float = 65.0
    elevated_score: float = 50.0

    @classmethod
    def from_settings(cls, scoring: Optional[ScoringCatalog] = None) -> "ConvergenceConfig":
        weights = (scoring or ScoringCatalog()).convergence()
        urgency = weights["urgency"]
        return cls(
            radius_km=settings.GEO_INTEL_CONVERGENCE_RADIUS_KM,
            window_hours=settings.GEO_INTEL_CONVERGENCE_WINDOW_HOURS,
            min_types=settings.GEO_INTEL_CONVERGENCE_MIN_TYPES,
            min_signals=settings.GEO_INTEL_CONVERGENCE_MIN_SIGNALS,
            type_points=float(weights["type_points"]),
            signal_points=float(weights["signal_points"]),
            signal_points_cap=float(weights["signal_points_cap"]),
            severity_points=float(weights["severity_points"]),
            critical_types=int(urgency["critical_types"]),
            critical_score=float(urgency["critical_score"]),
            high_types=int(urgency["high_types"]),
            high_score=float(urgency["high_score"]),
            elevated_score=float(urgency["elevated_score"]),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _UnionFind:
    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, i: int) -> int:
        root = i
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[i] != root:
            self._parent[i], i = root, self._parent[i]
        return root

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        # Lower index wins so roots never depend on edge visiting order.
        if ra < rb:
            self._parent[rb] = ra
        else:
            self._parent[ra] = rb


def _zone_id(signal_ids: Iterable[str]) -> str:
    digest = hashlib.sha256("|".join(sorted(signal_ids)).encode("utf-8")).hexdigest()[:16]
    return f"cz_{digest}"


def _centroid(members: list[Signal]) -> tuple[float, float]:
    return (
        sum(s.latitude for s in members) / len(members),
        sum(s.longitude for s in members) / len(members),
    )


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class ConvergenceDetector:
    """Clusters co-located, co-temporal signals of different types."""

    def __init__(
        self,
        config: Optional[ConvergenceConfig] = None,
        countries: Optional[CountryCatalog] = None,
    ) -> None:
        self.config = config or ConvergenceConfig.from_settings()
        self._countries = countries or CountryCatalog()
        self._active_zones: list[ConvergenceZone] = []
        self._last_run: Optional[datetime] = None

    # -- Scoring -------------------------------------------------------------

    def score(self, type_count: int, signal_count: int, max_severity: float) -> float:
        cfg = self.config
        raw = (
            type_count * cfg.type_points
            + min(cfg.signal_points_cap, signal_count * cfg.signal_points)
            + max_severity * cfg.severity_points
        )
        return round(min(100.0, raw), 1)

    def urgency(self, type_count: int, score: float) -> str:
        cfg = self.config
        if type_count >= cfg.critical_types or score >= cfg.critical_score:
            return "critical"
        if type_count >= cfg.high_types or score >= cfg.high_score:
            return "high"
        if score >= cfg.elevated_score:
            return "elevated"
        return "watch"

    def _region_label(self, members: list[Signal], lat: float, lon: float) -> str:
        counts = Counter(s.country for s in members if s.country)
        if counts:
            code = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
            return self._countries.country_name(code)
        located = self._countries.locate(lat, lon)
        if located is not None:
            return located.name
        return "Unknown region"

    # -- Detection -----------------------------------------------------------

    def detect(self, signals: Iterable[Signal], now: Optional[datetime] = None) -> list[ConvergenceZone]:
        """Return convergence zones for ``signals``; inputs are not modified."""
        window = timedelta(hours=self.config.window_hours)

        unique: dict[str, Signal] = {}
        for s in signals:
            if now is not None and s.timestamp < now - window:
                continue
            unique.setdefault(s.signal_id, s)
        ordered = [unique[k] for k in sorted(unique)]
        if not ordered:
            return []

        zones: list[ConvergenceZone] = []
        for component in self._components(ordered):
            for members in self._tighten(component):
                zone = self._zone(members)
                if zone is not None:
                    zones.append(zone)

        zones.sort(key=lambda z: (-z.total_signals, -len(z.signal_types), z.first_detected, z.zone_id))
        return zones

    def _components(self, ordered: list[Signal]) -> list[list[Signal]]:
        """Connected components of the proximity graph (edge: within R and W)."""
        cfg = self.config
        window_seconds = cfg.window_hours * 3600.0
        cell_deg = max(1e-6, cfg.radius_km / KM_PER_DEGREE_LAT)
        grid: dict[tuple[int, int], list[int]] = defaultdict(list)
        for idx, s in enumerate(ordered):
            grid[grid_cell(s.latitude, s.longitude, cell_deg)].append(idx)

        uf = _UnionFind(len(ordered))
        for idx, s in enumerate(ordered):
            row, col = grid_cell(s.latitude, s.longitude, cell_deg)
            # Longitude degrees shrink toward the poles; widen the column
            # span so every point within the radius is still a neighbour.
            band = min(89.9, abs(s.latitude) + cell_deg)
            lon_span = max(1, math.ceil(1.0 / max(1e-3, math.cos(math.radians(band)))))
            for dr in (-1, 0, 1):
                for dc in range(-lon_span, lon_span + 1):
                    for other in grid.get((row + dr, col + dc), ()):
                        if other <= idx:
                            continue
                        o = ordered[other]
                        if abs((o.timestamp - s.timestamp).total_seconds()) > window_seconds:
                            continue
                        if haversine_km(s.latitude, s.longitude, o.latitude, o.longitude) <= cfg.radius_km:
                            uf.union(idx, other)

        components: dict[int, list[Signal]] = defaultdict(list)
        for idx, s in enumerate(ordered):
            components[uf.find(idx)].append(s)
        return [components[root] for root in sorted(components)]

    def _tighten(self, component: list[Signal]) -> list[list[Signal]]:
        """Split a component until every group fits within R of its centroid and spans at most W.

        Chains of neighbours can reach far past R; the farthest member is
        dropped until the group is compact, and dropped members are
        clustered again among themselves.
        """
        cfg = self.config
        window_seconds = cfg.window_hours * 3600.0
        groups: list[list[Signal]] = []
        pending = [component]
        while pending:
            kept = list(pending.pop())
            dropped: list[Signal] = []
            while len(kept) > 1:
                lat, lon = _centroid(kept)
                distance, _, outlier = max(
                    (haversine_km(lat, lon, s.latitude, s.longitude), s.signal_id, s) for s in kept
                )
                if distance <= cfg.radius_km:
                    first = min(s.timestamp for s in kept)
                    last = max(s.timestamp for s in kept)
                    if (last - first).total_seconds() <= window_seconds:
                        break
                    mid = first + (last - first) / 2
                    _, _, outlier = max((abs((s.timestamp - mid).total_seconds()), s.signal_id, s) for s in kept)
                kept = [s for s in kept if s.signal_id != outlier.signal_id]
                dropped.append(outlier)
            groups.append(kept)
            if dropped:
                pending.extend(self._components(sorted(dropped, key=lambda s: s.signal_id)))
        return groups

    def _zone(self, members: list[Signal]) -> Optional[ConvergenceZone]:
        cfg = self.config
        types = frozenset(s.signal_type.value for s in members)
        if len(types) < cfg.min_types or len(members) < cfg.min_signals:
            return None
        lat, lon = _centroid(members)
        radius = max(haversine_km(lat, lon, s.latitude, s.longitude) for s in members)
        score = self.score(len(types), len(members), max(s.severity for s in members))
        return ConvergenceZone(
            zone_id=_zone_id(s.signal_id for s in members),
            latitude=lat,
            longitude=lon,
            radius_km=round(max(0.0, radius), 1),
            signal_types=types,
            total_signals=len(members),
            region=self._region_label(members, lat, lon),
            first_detected=min(s.timestamp for s in members),
            last_signal_at=max(s.timestamp for s in members),
            urgency=self.urgency(len(types), score),
            score=score,
            countries=sorted({s.country for s in members if s.country}),
            signal_ids=sorted(s.signal_id for s in members),
        )

    # -- Stateful wrapper ----------------------------------------------------

    def refresh(self, aggregator: "SignalAggregator", now: Optional[datetime] = None) -> list[ConvergenceZone]:
        zones = self.detect(aggregator.active_signals(now), now=now)
        self._active_zones = zones
        self._last_run = now
        if zones:
            logger.info(
                "Convergence detector found %d zones (top score=%.1f)",
                len(zones),
                max(z.score for z in zones),
            )
        return list(zones)

    def get_active_zones(self) -> list[ConvergenceZone]:
        return list(self._active_zones)
