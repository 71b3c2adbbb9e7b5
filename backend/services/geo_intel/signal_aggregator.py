"""Typed signal buffer shared by every geo-intel component.

Collaborators push heterogeneous, already-parsed records (protests,
military tracks, outages, quakes, ...) and the aggregator normalises them
into immutable ``Signal`` objects held in per-type bounded buckets.  The
buffer is the single input the convergence detector and the CII engine
read from; nothing outside this module mutates it.
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from config import settings
from utils.clock import Clock, parse_iso, system_clock, to_iso

from .country_catalog import CountryCatalog
from .errors import MalformedRecord
from .geo import valid_coordinates

if TYPE_CHECKING:
    from .convergence_detector import ConvergenceDetector

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class SignalType(str, Enum):
    PROTEST = "protest"
    MILITARY_FLIGHT = "military_flight"
    MILITARY_VESSEL = "military_vessel"
    INTERNET_OUTAGE = "internet_outage"
    EARTHQUAKE = "earthquake"
    AIS_DISRUPTION = "ais_disruption"
    CABLE_ADVISORY = "cable_advisory"
    WEATHER_ALERT = "weather_alert"
    ARMED_CONFLICT = "armed_conflict"
    CYBER_INCIDENT = "cyber_incident"
    WILDFIRE = "wildfire"
    KEYWORD_SPIKE = "keyword_spike"

    @classmethod
    def parse(cls, value: Any) -> "SignalType":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError:
            raise MalformedRecord(f"unknown signal type {value!r}") from None


@dataclass(frozen=True)
class Signal:
    """One immutable geolocated observation."""

    signal_id: str
    signal_type: SignalType
    latitude: float
    longitude: float
    timestamp: datetime
    severity: float = 0.5  # 0-1
    source: str = ""
    country: Optional[str] = None  # ISO2
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False, hash=False)

    @classmethod
    def create(
        cls,
        signal_type: Any,
        latitude: float,
        longitude: float,
        timestamp: datetime,
        severity: float = 0.5,
        source: str = "",
        country: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        signal_id: Optional[str] = None,
    ) -> "Signal":
        kind = SignalType.parse(signal_type)
        return cls(
            signal_id=signal_id or _stable_signal_id(kind.value, source, latitude, longitude, to_iso(timestamp)),
            signal_type=kind,
            latitude=float(latitude),
            longitude=float(longitude),
            timestamp=timestamp,
            severity=float(severity),
            source=source,
            country=(country or "").strip().upper() or None,
            metadata=MappingProxyType(dict(metadata or {})),
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "Signal":
        """Coerce an upstream record; raises ``MalformedRecord``."""
        if not isinstance(raw, Mapping):
            raise MalformedRecord(f"expected mapping, got {type(raw).__name__}")
        kind = SignalType.parse(raw.get("signal_type", raw.get("type")))

        lat = raw.get("latitude", raw.get("lat"))
        lon = raw.get("longitude", raw.get("lon", raw.get("lng")))
        try:
            lat, lon = float(lat), float(lon)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise MalformedRecord(f"non-numeric coordinates {lat!r},{lon!r}") from None

        timestamp = parse_iso(raw.get("timestamp", raw.get("detected_at", raw.get("time"))))
        if timestamp is None:
            raise MalformedRecord("missing or unparsable timestamp")

        try:
            severity = float(raw.get("severity", 0.5))
        except (TypeError, ValueError):
            raise MalformedRecord(f"non-numeric severity {raw.get('severity')!r}") from None

        metadata = raw.get("metadata")
        return cls.create(
            signal_type=kind,
            latitude=lat,
            longitude=lon,
            timestamp=timestamp,
            severity=severity,
            source=str(raw.get("source") or ""),
            country=str(raw.get("country") or "") or None,
            metadata=metadata if isinstance(metadata, Mapping) else None,
            signal_id=str(raw.get("signal_id") or raw.get("id") or "") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "signal_type": self.signal_type.value,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": to_iso(self.timestamp),
            "severity": self.severity,
            "source": self.source,
            "country": self.country,
            "metadata": dict(self.metadata),
        }


def _stable_signal_id(*parts: Any) -> str:
    packed = "|".join(str(p or "") for p in parts)
    digest = hashlib.sha256(packed.encode("utf-8")).hexdigest()[:20]
    return f"sig_{digest}"


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


@dataclass
class SignalAggregatorConfig:
    retention_hours: float = 24.0
    capacity_per_type: int = 2000
    max_future_skew_seconds: float = 300.0
    top_countries: int = 8

    @classmethod
    def from_settings(cls) -> "SignalAggregatorConfig":
        return cls(
            retention_hours=settings.GEO_INTEL_SIGNAL_RETENTION_HOURS,
            capacity_per_type=settings.GEO_INTEL_SIGNAL_CAPACITY_PER_TYPE,
            max_future_skew_seconds=settings.GEO_INTEL_SIGNAL_MAX_FUTURE_SKEW_SECONDS,
            top_countries=settings.GEO_INTEL_SUMMARY_TOP_COUNTRIES,
        )


class SignalAggregator:
    """Validating, deduplicating, time-windowed signal buffer."""

    def __init__(
        self,
        config: Optional[SignalAggregatorConfig] = None,
        clock: Optional[Clock] = None,
        countries: Optional[CountryCatalog] = None,
    ) -> None:
        self.config = config or SignalAggregatorConfig.from_settings()
        self._clock = clock or system_clock
        self._countries = countries or CountryCatalog()
        self._buckets: dict[SignalType, deque[Signal]] = {kind: deque() for kind in SignalType}
        self._seen_ids: set[str] = set()
        self._convergence: Optional["ConvergenceDetector"] = None
        self.ingested_count = 0
        self.dropped_count = 0
        self.duplicate_count = 0

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.config.retention_hours)

    def attach_convergence(self, detector: "ConvergenceDetector") -> None:
        self._convergence = detector

    # -- Ingestion -----------------------------------------------------------

    def _validate(self, signal: Signal, now: datetime) -> Signal:
        if not valid_coordinates(signal.latitude, signal.longitude):
            raise MalformedRecord(f"invalid coordinates {signal.latitude},{signal.longitude}")
        if not isinstance(signal.timestamp, datetime) or signal.timestamp.tzinfo is None:
            raise MalformedRecord("timestamp must be timezone-aware")
        if signal.timestamp < now - self.retention:
            raise MalformedRecord("timestamp outside retention window")
        if signal.timestamp > now + timedelta(seconds=self.config.max_future_skew_seconds):
            raise MalformedRecord("timestamp too far in the future")
        if not isinstance(signal.severity, (int, float)) or not math.isfinite(signal.severity):
            raise MalformedRecord(f"invalid severity {signal.severity!r}")

        updates: dict[str, Any] = {}
        if not isinstance(signal.signal_type, SignalType):
            updates["signal_type"] = SignalType.parse(signal.signal_type)
        clamped = min(1.0, max(0.0, float(signal.severity)))
        if clamped != signal.severity:
            updates["severity"] = clamped
        if not signal.country:
            located = self._countries.locate(signal.latitude, signal.longitude)
            if located is not None:
                updates["country"] = located.code
        return replace(signal, **updates) if updates else signal

    def store(self, record: Signal | Mapping[str, Any]) -> Optional[Signal]:
        """Validate and store one record; returns the stored copy or None.

        Malformed input is counted and dropped, never raised.  The stored
        copy may differ from the input (clamped severity, attributed country).
        """
        now = self._clock.now()
        try:
            signal = record if isinstance(record, Signal) else Signal.from_mapping(record)
            signal = self._validate(signal, now)
        except MalformedRecord as exc:
            self.dropped_count += 1
            logger.debug("Dropping malformed signal: %s", exc)
            return None

        self.prune(now)
        if signal.signal_id in self._seen_ids:
            self.duplicate_count += 1
            return None

        bucket = self._buckets[signal.signal_type]
        bucket.append(signal)
        self._seen_ids.add(signal.signal_id)
        while len(bucket) > self.config.capacity_per_type:
            evicted = bucket.popleft()
            self._seen_ids.discard(evicted.signal_id)
        self.ingested_count += 1
        return signal

    def ingest(self, record: Signal | Mapping[str, Any]) -> bool:
        return self.store(record) is not None

    def ingest_many(self, records: Iterable[Signal | Mapping[str, Any]]) -> tuple[list[Signal], int]:
        """Ingest a batch; returns (stored signals, malformed count)."""
        stored: list[Signal] = []
        dropped_before = self.dropped_count
        for record in records:
            signal = self.store(record)
            if signal is not None:
                stored.append(signal)
        return stored, self.dropped_count - dropped_before

    def prune(self, now: Optional[datetime] = None) -> int:
        """Evict signals older than the retention window."""
        cutoff = (now or self._clock.now()) - self.retention
        pruned = 0
        for bucket in self._buckets.values():
            while bucket and bucket[0].timestamp < cutoff:
                evicted = bucket.popleft()
                self._seen_ids.discard(evicted.signal_id)
                pruned += 1
            if bucket and any(s.timestamp < cutoff for s in bucket):
                # Out-of-order arrivals: rebuild the bucket.
                kept = [s for s in bucket if s.timestamp >= cutoff]
                for s in bucket:
                    if s.timestamp < cutoff:
                        self._seen_ids.discard(s.signal_id)
                        pruned += 1
                bucket.clear()
                bucket.extend(kept)
        if pruned:
            logger.debug("Signal aggregator pruned %d expired signals", pruned)
        return pruned

    # -- Read accessors (copies) ----------------------------------------------

    def active_signals(
        self,
        now: Optional[datetime] = None,
        types: Optional[Iterable[SignalType | str]] = None,
    ) -> list[Signal]:
        self.prune(now)
        kinds = [SignalType.parse(t) for t in types] if types is not None else list(SignalType)
        out: list[Signal] = []
        for kind in kinds:
            out.extend(self._buckets[kind])
        out.sort(key=lambda s: (s.timestamp, s.signal_id))
        return out

    def signals_for_country(self, code: str, types: Optional[Iterable[SignalType | str]] = None) -> list[Signal]:
        target = str(code or "").strip().upper()
        return [s for s in self.active_signals(types=types) if s.country == target]

    def counts_by_country(self, types: Optional[Iterable[SignalType | str]] = None) -> dict[str, int]:
        counts: Counter[str] = Counter()
        for s in self.active_signals(types=types):
            if s.country:
                counts[s.country] += 1
        return dict(counts)

    def count(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())

    # -- Summary ---------------------------------------------------------------

    def country_rows(self, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Per-country signal counts and types, busiest first."""
        per_country: dict[str, list[Signal]] = defaultdict(list)
        for s in self.active_signals(now):
            if s.country:
                per_country[s.country].append(s)
        ranked = sorted(per_country.items(), key=lambda kv: (-len(kv[1]), kv[0]))
        return [
            {
                "code": code,
                "name": self._countries.country_name(code),
                "count": len(rows),
                "signal_types": sorted({s.signal_type.value for s in rows}),
                "total_severity": round(sum(s.severity for s in rows), 3),
            }
            for code, rows in ranked
        ]

    def get_summary(self, include_all_countries: bool = False) -> dict[str, Any]:
        now = self._clock.now()
        signals = self.active_signals(now)

        by_type: Counter[str] = Counter(s.signal_type.value for s in signals)
        countries = self.country_rows(now)
        top_countries = countries[: self.config.top_countries]

        zones = self._convergence.get_active_zones() if self._convergence is not None else []
        zone_dicts = [z.to_dict() for z in zones]

        summary = {
            "timestamp": to_iso(now),
            "total_signals": len(signals),
            "by_type": dict(sorted(by_type.items(), key=lambda kv: (-kv[1], kv[0]))),
            "top_countries": top_countries,
            "convergence_zones": zone_dicts,
            "ai_context": _ai_context(len(signals), by_type, top_countries, zone_dicts),
            "ingested_count": self.ingested_count,
            "dropped_count": self.dropped_count,
        }
        if include_all_countries:
            summary["countries"] = countries
        return summary


def _ai_context(
    total: int,
    by_type: Counter[str],
    top_countries: list[dict[str, Any]],
    zones: list[dict[str, Any]],
) -> str:
    if total == 0:
        return "[SIGNALS] No active signals."
    parts = [
        f"[SIGNALS] {total} active signals: "
        + ", ".join(f"{kind} {count}" for kind, count in by_type.most_common())
    ]
    if top_countries:
        parts.append(
            "Top countries: "
            + "; ".join(
                f"{row['name']} ({row['count']}: {', '.join(row['signal_types'])})" for row in top_countries
            )
        )
    if zones:
        top = zones[0]
        parts.append(
            f"Convergence: {len(zones)} zone(s), strongest near {top['region']} "
            f"({len(top['signal_types'])} types, {top['total_signals']} signals)"
        )
    return ". ".join(parts) + "."
