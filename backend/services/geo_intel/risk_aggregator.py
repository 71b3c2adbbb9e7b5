"""Cross-module risk aggregation and the unified alert feed.

Combines convergence zones, CII deviations, infrastructure incidents and
theater posture into one composite score (0-100) and synthesizes a
deduplicated, ranked alert stream retained for a bounded window.  Critical
focal points (news and signals converging on one entity) feed the alert
stream and the top-risk list.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from config import settings
from utils.clock import Clock, parse_iso, system_clock, to_iso

from .convergence_detector import ConvergenceZone
from .country_catalog import CountryCatalog
from .errors import InsufficientData
from .focal_point_detector import FocalPoint
from .geo import haversine_km
from .instability_scorer import CountryScore
from .scoring_catalog import ScoringCatalog
from .signal_aggregator import Signal
from .theater_posture import TheaterPostureSummary

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
ALERT_TYPES = ("convergence", "cii_spike", "cascade", "composite", "posture", "focal")

OK = "ok"
PARTIAL = "partial"
INSUFFICIENT = "insufficient"
STALE = "stale"

_ZONE_PRIORITY = {"critical": "critical", "high": "high", "elevated": "medium", "watch": "low"}

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class UnifiedAlert:
    alert_id: str
    alert_type: str
    priority: str  # "critical" | "high" | "medium" | "low"
    title: str
    summary: str
    timestamp: datetime
    location: Optional[tuple[float, float]] = None
    countries: list[str] = field(default_factory=list)

    @property
    def dedup_key(self) -> tuple:
        return _dedup_key(self.alert_type, self.location, self.timestamp, self.countries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type,
            "priority": self.priority,
            "title": self.title,
            "summary": self.summary,
            "location": (
                {"latitude": self.location[0], "longitude": self.location[1]} if self.location else None
            ),
            "countries": list(self.countries),
            "timestamp": to_iso(self.timestamp),
        }


@dataclass
class StrategicRiskOverview:
    composite_score: Optional[int]
    level: str  # "critical" | "elevated" | "moderate" | "low" | "unknown"
    trend: str  # "escalating" | "de-escalating" | "stable"
    status: str  # "ok" | "partial" | "insufficient" | "stale"
    convergence_alerts: int = 0
    avg_cii_deviation: float = 0.0
    infrastructure_incidents: int = 0
    top_risks: list[str] = field(default_factory=list)
    top_convergence_zones: list[dict[str, Any]] = field(default_factory=list)
    unstable_countries: list[dict[str, Any]] = field(default_factory=list)
    alert_counts: dict[str, Any] = field(default_factory=dict)
    components: dict[str, float] = field(default_factory=dict)
    missing_sources: list[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "composite_score": self.composite_score,
            "level": self.level,
            "trend": self.trend,
            "status": self.status,
            "convergence_alerts": self.convergence_alerts,
            "avg_cii_deviation": self.avg_cii_deviation,
            "infrastructure_incidents": self.infrastructure_incidents,
            "top_risks": list(self.top_risks),
            "top_convergence_zones": list(self.top_convergence_zones),
            "unstable_countries": list(self.unstable_countries),
            "alert_counts": dict(self.alert_counts),
            "components": dict(self.components),
            "missing_sources": list(self.missing_sources),
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StrategicRiskOverview":
        score = payload.get("composite_score")
        return cls(
            composite_score=int(score) if score is not None else None,
            level=str(payload.get("level") or "unknown"),
            trend=str(payload.get("trend") or "stable"),
            status=str(payload.get("status") or OK),
            convergence_alerts=int(payload.get("convergence_alerts") or 0),
            avg_cii_deviation=float(payload.get("avg_cii_deviation") or 0.0),
            infrastructure_incidents=int(payload.get("infrastructure_incidents") or 0),
            top_risks=[str(r) for r in payload.get("top_risks") or []],
            top_convergence_zones=list(payload.get("top_convergence_zones") or []),
            unstable_countries=list(payload.get("unstable_countries") or []),
            alert_counts=dict(payload.get("alert_counts") or {}),
            components={str(k): float(v) for k, v in (payload.get("components") or {}).items()},
            missing_sources=[str(s) for s in payload.get("missing_sources") or []],
            timestamp=parse_iso(payload.get("timestamp")),
        )


@dataclass
class RiskConfig:
    weights: dict[str, float] = field(
        default_factory=lambda: {"convergence": 0.3, "cii": 0.3, "infrastructure": 0.15, "posture": 0.25}
    )
    convergence_points_per_zone: float = 25.0
    cii_deviation_multiplier: float = 2.0
    infrastructure_points_per_incident: float = 10.0
    posture_points_critical: float = 50.0
    posture_points_elevated: float = 20.0
    levels: dict[str, float] = field(default_factory=lambda: {"critical": 70.0, "elevated": 50.0, "moderate": 30.0})
    trend_threshold: float = 5.0
    trend_window: int = 3
    trend_lookback_hours: float = 6.0
    cascade_radius_km: float = 300.0
    cascade_country_incidents: int = 3
    composite_alert_threshold: float = 70.0
    infrastructure_types: list[str] = field(
        default_factory=lambda: ["internet_outage", "cable_advisory", "cyber_incident"]
    )
    spike_threshold: float = 15.0
    alert_retention_hours: float = 24.0
    max_alerts: int = 500

    @classmethod
    def from_settings(cls, scoring: Optional[ScoringCatalog] = None) -> "RiskConfig":
        scoring = scoring or ScoringCatalog()
        r = scoring.risk()
        return cls(
            weights=r["weights"],
            convergence_points_per_zone=r["convergence_points_per_zone"],
            cii_deviation_multiplier=r["cii_deviation_multiplier"],
            infrastructure_points_per_incident=r["infrastructure_points_per_incident"],
            posture_points_critical=r["posture_points_critical"],
            posture_points_elevated=r["posture_points_elevated"],
            levels=r["levels"],
            trend_threshold=r["trend_threshold"],
            trend_window=int(r["trend_window"]),
            trend_lookback_hours=r["trend_lookback_hours"],
            cascade_radius_km=r["cascade_radius_km"],
            cascade_country_incidents=int(r["cascade_country_incidents"]),
            composite_alert_threshold=r["composite_alert_threshold"],
            infrastructure_types=list(r["infrastructure_types"]),
            spike_threshold=scoring.cii()["spike_threshold"],
            alert_retention_hours=settings.GEO_INTEL_ALERT_RETENTION_HOURS,
            max_alerts=settings.GEO_INTEL_ALERT_MAX_ITEMS,
        )


def _dedup_key(
    alert_type: str,
    location: Optional[tuple[float, float]],
    timestamp: datetime,
    countries: Iterable[str] = (),
) -> tuple:
    hour = timestamp.replace(minute=0, second=0, microsecond=0)
    if location is not None:
        place: tuple = (round(location[0]), round(location[1]))
    else:
        place = tuple(sorted(countries))
    return (alert_type, place, hour.isoformat())


def _alert_id(key: tuple) -> str:
    return "alert_" + hashlib.sha256(repr(key).encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class RiskAggregator:
    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        clock: Optional[Clock] = None,
        countries: Optional[CountryCatalog] = None,
    ) -> None:
        self.config = config or RiskConfig.from_settings()
        self._clock = clock or system_clock
        self._countries = countries or CountryCatalog()
        self._alerts: deque[UnifiedAlert] = deque(maxlen=max(1, self.config.max_alerts))
        self._alert_keys: set[tuple] = set()
        self._history: deque[tuple[datetime, int]] = deque(maxlen=256)
        self._last: Optional[StrategicRiskOverview] = None

    # -- Scoring -------------------------------------------------------------

    def composite(
        self,
        zone_count: int,
        avg_deviation: float,
        incidents: int,
        critical_theaters: int,
        elevated_theaters: int,
    ) -> tuple[int, dict[str, float]]:
        cfg = self.config
        parts = {
            "convergence": min(100.0, zone_count * cfg.convergence_points_per_zone),
            "cii": min(100.0, max(0.0, avg_deviation) * cfg.cii_deviation_multiplier),
            "infrastructure": min(100.0, incidents * cfg.infrastructure_points_per_incident),
            "posture": min(
                100.0,
                critical_theaters * cfg.posture_points_critical + elevated_theaters * cfg.posture_points_elevated,
            ),
        }
        total = sum(cfg.weights.get(name, 0.0) * value for name, value in parts.items())
        score = int(round(min(100.0, max(0.0, total))))
        return score, {name: round(value, 1) for name, value in parts.items()}

    def level(self, score: Optional[int]) -> str:
        if score is None:
            return "unknown"
        levels = self.config.levels
        if score >= levels.get("critical", 70.0):
            return "critical"
        if score >= levels.get("elevated", 50.0):
            return "elevated"
        if score >= levels.get("moderate", 30.0):
            return "moderate"
        return "low"

    def trend(self, score: int, now: datetime) -> str:
        """Compare against the mean of recent prior computations."""
        cutoff = now - timedelta(hours=self.config.trend_lookback_hours)
        previous = [s for ts, s in self._history if cutoff <= ts <= now]
        previous = previous[-max(1, self.config.trend_window):]
        if not previous:
            return "stable"
        delta = score - sum(previous) / len(previous)
        if delta > self.config.trend_threshold:
            return "escalating"
        if delta < -self.config.trend_threshold:
            return "de-escalating"
        return "stable"

    # -- Alerts --------------------------------------------------------------

    def _country_point(self, code: str) -> Optional[tuple[float, float]]:
        info = self._countries.get(code)
        if info is None:
            return None
        return (info.latitude, info.longitude)

    def add_alert(
        self,
        alert_type: str,
        priority: str,
        title: str,
        summary: str,
        timestamp: datetime,
        location: Optional[tuple[float, float]] = None,
        countries: Iterable[str] = (),
    ) -> Optional[UnifiedAlert]:
        """Record an alert unless one with the same dedup key is retained."""
        countries = sorted(set(countries))
        key = _dedup_key(alert_type, location, timestamp, countries)
        if key in self._alert_keys:
            return None
        cutoff = self._clock.now() - timedelta(hours=self.config.alert_retention_hours)
        if timestamp < cutoff:
            return None
        if len(self._alerts) == self._alerts.maxlen:
            self._alert_keys.discard(self._alerts[0].dedup_key)
        alert = UnifiedAlert(
            alert_id=_alert_id(key),
            alert_type=alert_type,
            priority=priority,
            title=title,
            summary=summary,
            timestamp=timestamp,
            location=location,
            countries=countries,
        )
        self._alerts.append(alert)
        self._alert_keys.add(key)
        return alert

    def _convergence_alerts(self, zones: list[ConvergenceZone]) -> int:
        created = 0
        for zone in zones:
            types = ", ".join(sorted(zone.signal_types))
            alert = self.add_alert(
                "convergence",
                _ZONE_PRIORITY.get(zone.urgency, "low"),
                f"Signal convergence near {zone.region}",
                f"{zone.total_signals} signals of {len(zone.signal_types)} types ({types})",
                zone.last_signal_at,
                (round(zone.latitude, 3), round(zone.longitude, 3)),
                zone.countries,
            )
            created += alert is not None
        return created

    def _cii_alerts(self, spikes: list[CountryScore], now: datetime) -> None:
        for score in spikes:
            if score.level == "critical":
                priority = "critical"
            elif score.level == "high" or abs(score.change_24h) >= 2 * self.config.spike_threshold:
                priority = "high"
            else:
                priority = "medium"
            direction = "up" if score.change_24h >= 0 else "down"
            self.add_alert(
                "cii_spike",
                priority,
                f"{score.name} instability {direction} {abs(score.change_24h):.0f} pts",
                f"CII {score.score:.0f} ({score.level}, {score.trend})",
                score.last_updated or now,
                self._country_point(score.code),
                [score.code],
            )

    def _posture_alerts(self, postures: list[TheaterPostureSummary], now: datetime) -> None:
        for summary in postures:
            if summary.posture_level not in ("elevated", "critical"):
                continue
            detail = f"{summary.total_aircraft} aircraft, {summary.total_vessels} vessels"
            if summary.strike_capable:
                detail += ", strike capable"
            if summary.target_nation:
                detail += f", focus {summary.target_nation}"
            self.add_alert(
                "posture",
                "critical" if summary.posture_level == "critical" else "high",
                f"{summary.name} posture {summary.posture_level}",
                detail,
                summary.computed_at or now,
                (round(summary.center_lat, 3), round(summary.center_lon, 3)),
            )

    def _focal_alerts(self, points: list[FocalPoint], now: datetime) -> None:
        for point in points:
            if point.urgency != "critical":
                continue
            location = self._country_point(point.country) if point.country else None
            self.add_alert(
                "focal",
                "high",
                f"{point.display_name} focal point critical",
                point.narrative or f"{point.news_mentions} mentions, {point.signal_count} signals",
                now,
                location,
                [point.country] if point.country else [],
            )

    def _cascade_alerts(self, zones: list[ConvergenceZone], infrastructure: list[Signal]) -> None:
        cfg = self.config
        for zone in zones:
            nearby = [
                s
                for s in infrastructure
                if haversine_km(zone.latitude, zone.longitude, s.latitude, s.longitude) <= cfg.cascade_radius_km
            ]
            if not nearby:
                continue
            latest = max(s.timestamp for s in nearby)
            self.add_alert(
                "cascade",
                "high",
                f"Infrastructure disruption inside convergence near {zone.region}",
                f"{len(nearby)} infrastructure incident(s) within {cfg.cascade_radius_km:.0f} km",
                max(latest, zone.last_signal_at),
                (round(zone.latitude, 3), round(zone.longitude, 3)),
                zone.countries,
            )

        by_country: dict[str, list[Signal]] = {}
        for s in infrastructure:
            if s.country:
                by_country.setdefault(s.country, []).append(s)
        for code, incidents in sorted(by_country.items()):
            if len(incidents) < cfg.cascade_country_incidents:
                continue
            self.add_alert(
                "cascade",
                "high" if len(incidents) >= 2 * cfg.cascade_country_incidents else "medium",
                f"Infrastructure cascade in {self._countries.country_name(code)}",
                f"{len(incidents)} infrastructure incidents ("
                + ", ".join(sorted({s.signal_type.value for s in incidents}))
                + ")",
                max(s.timestamp for s in incidents),
                self._country_point(code),
                [code],
            )

    def prune_alerts(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock.now()
        cutoff = now - timedelta(hours=self.config.alert_retention_hours)
        kept = [a for a in self._alerts if a.timestamp >= cutoff]
        removed = len(self._alerts) - len(kept)
        if removed:
            self._alerts = deque(kept, maxlen=self._alerts.maxlen)
            self._alert_keys = {a.dedup_key for a in kept}
        return removed

    def get_recent_alerts(self, hours: float = 24.0, now: Optional[datetime] = None) -> list[UnifiedAlert]:
        now = now or self._clock.now()
        cutoff = now - timedelta(hours=hours)
        alerts = [a for a in self._alerts if a.timestamp >= cutoff]
        alerts.sort(key=lambda a: (PRIORITY_ORDER.get(a.priority, 9), -a.timestamp.timestamp(), a.alert_id))
        return alerts

    def get_alert_counts(self, hours: float = 24.0) -> dict[str, Any]:
        alerts = self.get_recent_alerts(hours)
        by_priority = Counter(a.priority for a in alerts)
        by_type = Counter(a.alert_type for a in alerts)
        return {
            "total": len(alerts),
            **{p: by_priority.get(p, 0) for p in PRIORITY_ORDER},
            "by_type": {t: by_type.get(t, 0) for t in ALERT_TYPES},
        }

    # -- Overview ------------------------------------------------------------

    @staticmethod
    def data_status(freshness: dict[str, Any]) -> str:
        if int(freshness.get("active_sources") or 0) <= 0:
            raise InsufficientData("no active sources")
        return PARTIAL if freshness.get("missing_required") else OK

    def infrastructure_incidents(self, signals: Iterable[Signal]) -> list[Signal]:
        kinds = set(self.config.infrastructure_types)
        return [s for s in signals if s.signal_type.value in kinds]

    def compute(
        self,
        zones: list[ConvergenceZone],
        cii_scores: list[CountryScore],
        avg_deviation: float,
        cii_spikes: list[CountryScore],
        signals: Iterable[Signal],
        postures: list[TheaterPostureSummary],
        freshness: dict[str, Any],
        now: Optional[datetime] = None,
        focal_points: Iterable[FocalPoint] = (),
    ) -> StrategicRiskOverview:
        now = now or self._clock.now()
        focal = list(focal_points)
        infrastructure = self.infrastructure_incidents(signals)
        self.prune_alerts(now)

        convergence_alerts = self._convergence_alerts(zones)
        self._cii_alerts(cii_spikes, now)
        self._posture_alerts(postures, now)
        self._focal_alerts(focal, now)
        self._cascade_alerts(zones, infrastructure)

        missing = list(freshness.get("missing_required") or [])
        try:
            status = self.data_status(freshness)
        except InsufficientData as exc:
            logger.info("Risk overview insufficient: %s", exc)
            status = INSUFFICIENT

        score: Optional[int] = None
        components: dict[str, float] = {}
        trend = "stable"
        if status != INSUFFICIENT:
            levels = Counter(p.posture_level for p in postures)
            score, components = self.composite(
                len(zones), avg_deviation, len(infrastructure), levels.get("critical", 0), levels.get("elevated", 0)
            )
            trend = self.trend(score, now)
            self._history.append((now, score))
            if score >= self.config.composite_alert_threshold:
                self.add_alert(
                    "composite",
                    "critical" if self.level(score) == "critical" else "high",
                    f"Strategic risk {self.level(score)} ({score})",
                    f"convergence {components['convergence']:.0f}, cii {components['cii']:.0f}, "
                    f"infrastructure {components['infrastructure']:.0f}, posture {components['posture']:.0f}",
                    now,
                )

        unstable = [s for s in cii_scores if s.level in ("elevated", "high", "critical")]
        overview = StrategicRiskOverview(
            composite_score=score,
            level=self.level(score),
            trend=trend,
            status=status,
            convergence_alerts=convergence_alerts,
            avg_cii_deviation=round(avg_deviation, 2),
            infrastructure_incidents=len(infrastructure),
            top_risks=self._top_risks(zones, unstable, postures, focal),
            top_convergence_zones=[z.to_dict() for z in zones[:3]],
            unstable_countries=[s.to_dict() for s in unstable[:5]],
            alert_counts=self.get_alert_counts(),
            components=components,
            missing_sources=missing,
            timestamp=now,
        )
        self._last = overview
        return overview

    @staticmethod
    def _top_risks(
        zones: list[ConvergenceZone],
        unstable: list[CountryScore],
        postures: list[TheaterPostureSummary],
        focal: Iterable[FocalPoint] = (),
    ) -> list[str]:
        risks: list[str] = []
        for zone in zones[:2]:
            risks.append(f"Convergence near {zone.region}: {', '.join(sorted(zone.signal_types))}")
        for score in unstable[:2]:
            risks.append(f"{score.name} instability {score.score:.0f} ({score.trend})")
        for summary in postures:
            if summary.posture_level == "critical":
                risks.append(f"{summary.name} posture critical")
        for point in focal:
            if point.urgency == "critical":
                risks.append(f"{point.display_name} focal point critical")
        return risks[:5]

    @property
    def last_overview(self) -> Optional[StrategicRiskOverview]:
        return self._last

    def get_health(self) -> dict[str, Any]:
        return {
            "retained_alerts": len(self._alerts),
            "history_points": len(self._history),
            "last_status": self._last.status if self._last else None,
            "last_computed_at": to_iso(self._last.timestamp) if self._last else None,
        }
