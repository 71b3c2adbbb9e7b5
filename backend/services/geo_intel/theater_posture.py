"""Theater military posture assessment.

Tallies military aircraft and vessel snapshots inside fixed named theaters
and assigns each theater a posture level, strike capability, trend and a
best-effort target nation.  Vessel tracking is the least reliable feed,
so when it comes back empty or fails, each theater falls back to its own
last-known-good vessel counts (bounded age) and a re-augmentation
schedule retries until live vessels arrive.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from config import settings
from utils.clock import Clock, parse_iso, system_clock, to_iso

from .circuit_breaker import CircuitBreakerRegistry
from .errors import CacheUnavailable, MalformedRecord
from .geo import haversine_km, valid_coordinates
from .interfaces import DurableStore
from .scheduling import KeyedLocks
from .theater_catalog import Theater, TheaterCatalog

logger = logging.getLogger(__name__)

LEVEL_ORDER = {"critical": 0, "elevated": 1, "normal": 2}

_AIRCRAFT_BUCKETS = {
    "fighter": "fighters",
    "bomber": "bombers",
    "tanker": "tankers",
    "awacs": "awacs",
    "aew": "awacs",
    "reconnaissance": "reconnaissance",
    "recon": "reconnaissance",
    "transport": "transport",
    "drone": "drones",
    "uav": "drones",
}
_VESSEL_BUCKETS = {
    "destroyer": "destroyers",
    "frigate": "frigates",
    "carrier": "carriers",
    "submarine": "submarines",
    "patrol": "patrol",
}
AIRCRAFT_FIELDS = ("fighters", "bombers", "tankers", "awacs", "reconnaissance", "transport", "drones", "other_aircraft")
VESSEL_FIELDS = ("destroyers", "frigates", "carriers", "submarines", "patrol", "auxiliary_vessels")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MilitaryAsset:
    """One military aircraft or vessel position report."""

    asset_id: str
    kind: str  # "aircraft" | "vessel"
    asset_type: str  # fighter, bomber, destroyer, carrier, ...
    latitude: float
    longitude: float
    operator: str = "unknown"
    observed_at: Optional[datetime] = None
    callsign: str = ""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], kind: Optional[str] = None) -> "MilitaryAsset":
        if not isinstance(raw, Mapping):
            raise MalformedRecord(f"expected mapping, got {type(raw).__name__}")
        asset_kind = str(kind or raw.get("kind") or "").strip().lower()
        if asset_kind not in ("aircraft", "vessel"):
            raise MalformedRecord(f"unknown asset kind {asset_kind!r}")
        try:
            lat = float(raw.get("latitude", raw.get("lat")))  # type: ignore[arg-type]
            lon = float(raw.get("longitude", raw.get("lon")))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise MalformedRecord("non-numeric asset coordinates") from None
        if not valid_coordinates(lat, lon):
            raise MalformedRecord(f"invalid asset coordinates {lat},{lon}")
        asset_id = str(raw.get("asset_id") or raw.get("id") or raw.get("icao24") or raw.get("mmsi") or "").strip()
        if not asset_id:
            raise MalformedRecord("asset without id")
        return cls(
            asset_id=asset_id,
            kind=asset_kind,
            asset_type=str(raw.get("asset_type") or raw.get("type") or "unknown").strip().lower(),
            latitude=lat,
            longitude=lon,
            operator=str(raw.get("operator") or "unknown").strip().lower(),
            observed_at=parse_iso(raw.get("observed_at") or raw.get("timestamp")),
            callsign=str(raw.get("callsign") or "").strip(),
        )


@dataclass
class TheaterPostureSummary:
    theater_id: str
    name: str
    short_name: str
    bounds: dict[str, float]
    center_lat: float
    center_lon: float
    fighters: int = 0
    bombers: int = 0
    tankers: int = 0
    awacs: int = 0
    reconnaissance: int = 0
    transport: int = 0
    drones: int = 0
    other_aircraft: int = 0
    total_aircraft: int = 0
    destroyers: int = 0
    frigates: int = 0
    carriers: int = 0
    submarines: int = 0
    patrol: int = 0
    auxiliary_vessels: int = 0
    total_vessels: int = 0
    by_operator: dict[str, int] = field(default_factory=dict)
    posture_level: str = "normal"
    strike_capable: bool = False
    trend: str = "stable"
    change_percent: int = 0
    target_nation: Optional[str] = None
    vessels_from_cache: bool = False
    computed_at: Optional[datetime] = None
    stale: bool = False  # restored from a durable snapshot

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "TheaterPostureSummary":
        counts = {name: int(row.get(name) or 0) for name in AIRCRAFT_FIELDS + VESSEL_FIELDS}
        return cls(
            theater_id=str(row["theater_id"]),
            name=str(row.get("name") or row["theater_id"]),
            short_name=str(row.get("short_name") or ""),
            bounds={k: float(v) for k, v in (row.get("bounds") or {}).items()},
            center_lat=float(row.get("center_lat") or 0.0),
            center_lon=float(row.get("center_lon") or 0.0),
            total_aircraft=int(row.get("total_aircraft") or 0),
            total_vessels=int(row.get("total_vessels") or 0),
            by_operator={str(k): int(v) for k, v in (row.get("by_operator") or {}).items()},
            posture_level=str(row.get("posture_level") or "normal"),
            strike_capable=bool(row.get("strike_capable")),
            trend=str(row.get("trend") or "stable"),
            change_percent=int(row.get("change_percent") or 0),
            target_nation=row.get("target_nation"),
            vessels_from_cache=bool(row.get("vessels_from_cache")),
            computed_at=parse_iso(row.get("computed_at")),
            stale=bool(row.get("stale")),
            **counts,
        )

    @property
    def total_assets(self) -> int:
        return self.total_aircraft + self.total_vessels

    def vessel_counts(self) -> dict[str, int]:
        return {name: int(getattr(self, name)) for name in VESSEL_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "theater_id": self.theater_id,
            "name": self.name,
            "short_name": self.short_name,
            "bounds": dict(self.bounds),
            "center_lat": self.center_lat,
            "center_lon": self.center_lon,
        }
        for name in AIRCRAFT_FIELDS + ("total_aircraft",) + VESSEL_FIELDS + ("total_vessels",):
            out[name] = int(getattr(self, name))
        out.update(
            {
                "by_operator": dict(self.by_operator),
                "posture_level": self.posture_level,
                "strike_capable": self.strike_capable,
                "trend": self.trend,
                "change_percent": self.change_percent,
                "target_nation": self.target_nation,
                "vessels_from_cache": self.vessels_from_cache,
                "computed_at": to_iso(self.computed_at),
                "stale": self.stale,
            }
        )
        return out


@dataclass
class PostureConfig:
    trend_window: int = 3
    trend_threshold_percent: float = 10.0
    vessel_cache_max_age_seconds: float = 1800.0
    vessel_retry_schedule: list[float] = field(default_factory=lambda: [30.0, 60.0, 90.0, 120.0])

    @classmethod
    def from_settings(cls) -> "PostureConfig":
        return cls(
            trend_window=settings.GEO_INTEL_POSTURE_TREND_WINDOW,
            vessel_cache_max_age_seconds=settings.GEO_INTEL_POSTURE_VESSEL_CACHE_MAX_AGE_SECONDS,
            vessel_retry_schedule=list(settings.GEO_INTEL_POSTURE_VESSEL_RETRY_SECONDS),
        )


def _vessel_cache_key(theater_id: str) -> str:
    return f"posture:vessels:{theater_id}"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TheaterPostureEngine:
    def __init__(
        self,
        theaters: Optional[TheaterCatalog] = None,
        config: Optional[PostureConfig] = None,
        clock: Optional[Clock] = None,
        durable_store: Optional[DurableStore] = None,
    ) -> None:
        self._catalog = theaters or TheaterCatalog()
        self.config = config or PostureConfig.from_settings()
        self._clock = clock or system_clock
        self._durable = durable_store
        self._locks = KeyedLocks()
        self._history: dict[str, deque[int]] = {}
        self._vessel_cache: dict[str, tuple[dict[str, int], datetime]] = {}
        # Query key -> theaters its last non-empty vessel batch covered.
        self._vessel_coverage: dict[str, set[str]] = {}
        self._summaries: dict[str, TheaterPostureSummary] = {}
        self._last_aircraft: list[MilitaryAsset] = []
        self._awaiting_live_vessels = True
        self._reaugment_task: Optional[asyncio.Task] = None
        self._listeners: list[Callable[[list[TheaterPostureSummary]], Awaitable[None]]] = []
        self.last_refresh_at: Optional[datetime] = None

    @property
    def awaiting_live_vessels(self) -> bool:
        return self._awaiting_live_vessels

    def on_refresh(self, callback: Callable[[list[TheaterPostureSummary]], Awaitable[None]]) -> None:
        """Await ``callback(summaries)`` after every refresh, including vessel re-augmentation."""
        self._listeners.append(callback)

    # -- Classification ------------------------------------------------------

    @staticmethod
    def posture_level(theater: Theater, summary: TheaterPostureSummary) -> str:
        t = theater.thresholds
        total = summary.total_assets
        if total >= t.critical or summary.bombers >= t.critical_bombers:
            return "critical"
        if (
            total >= t.elevated
            or summary.bombers >= 1
            or summary.carriers >= 1
            or summary.fighters >= t.elevated_fighters
        ):
            return "elevated"
        return "normal"

    def _trend(self, theater_id: str, total: int) -> tuple[str, int]:
        window = max(1, int(self.config.trend_window))
        history = self._history.setdefault(theater_id, deque(maxlen=window * 2))
        history.append(total)
        values = list(history)
        current = values[-window:]
        previous = values[-2 * window : -window] if len(values) > window else []
        if not previous:
            return "stable", 0
        cur_mean = sum(current) / len(current)
        prev_mean = sum(previous) / len(previous)
        if prev_mean <= 0:
            change = 100 if cur_mean > 0 else 0
        else:
            change = int(round((cur_mean - prev_mean) / prev_mean * 100.0))
        if change >= self.config.trend_threshold_percent:
            return "rising", change
        if change <= -self.config.trend_threshold_percent:
            return "falling", change
        return "stable", change

    @staticmethod
    def target_nation(theater: Theater, assets: list[MilitaryAsset]) -> Optional[str]:
        if not assets or not theater.targets:
            return None
        lat = sum(a.latitude for a in assets) / len(assets)
        lon = sum(a.longitude for a in assets) / len(assets)
        best = min(
            theater.targets,
            key=lambda t: (haversine_km(lat, lon, t.latitude, t.longitude), t.code),
        )
        return best.name

    # -- Vessel cache --------------------------------------------------------

    async def _cached_vessel_counts(self, theater_id: str, now: datetime) -> Optional[dict[str, int]]:
        max_age = timedelta(seconds=self.config.vessel_cache_max_age_seconds)
        entry = self._vessel_cache.get(theater_id)
        if entry is None and self._durable is not None:
            try:
                durable = await self._durable.get(_vessel_cache_key(theater_id))
            except CacheUnavailable as exc:
                logger.warning("Vessel cache unavailable for %s: %s", theater_id, exc)
                durable = None
            if durable is not None and isinstance(durable.value, dict):
                counts = {k: int(durable.value.get(k, 0) or 0) for k in VESSEL_FIELDS}
                entry = (counts, durable.updated_at)
                self._vessel_cache[theater_id] = entry
        if entry is None:
            return None
        counts, stored_at = entry
        if now - stored_at > max_age:
            return None
        return dict(counts)

    async def _store_vessel_counts(self, theater_id: str, counts: dict[str, int], now: datetime) -> None:
        self._vessel_cache[theater_id] = (dict(counts), now)
        if self._durable is None:
            return
        try:
            await self._durable.set(_vessel_cache_key(theater_id), dict(counts))
        except CacheUnavailable as exc:
            logger.warning("Vessel cache write skipped for %s: %s", theater_id, exc)

    # -- Refresh -------------------------------------------------------------

    async def _refresh_theater(
        self,
        theater: Theater,
        aircraft: list[MilitaryAsset],
        vessels: list[MilitaryAsset],
        live_vessels: bool,
        now: datetime,
        feed_up: bool = False,
    ) -> TheaterPostureSummary:
        async with self._locks.lock(theater.theater_id):
            center_lat, center_lon = theater.center
            summary = TheaterPostureSummary(
                theater_id=theater.theater_id,
                name=theater.name,
                short_name=theater.short_name,
                bounds=theater.bounds(),
                center_lat=center_lat,
                center_lon=center_lon,
                computed_at=now,
            )
            in_aircraft = [a for a in aircraft if theater.contains(a.latitude, a.longitude)]
            in_vessels = [v for v in vessels if theater.contains(v.latitude, v.longitude)]
            operators: Counter[str] = Counter()

            for asset in in_aircraft:
                bucket = _AIRCRAFT_BUCKETS.get(asset.asset_type, "other_aircraft")
                setattr(summary, bucket, getattr(summary, bucket) + 1)
                operators[asset.operator or "unknown"] += 1
            summary.total_aircraft = len(in_aircraft)

            cached = None if live_vessels else await self._cached_vessel_counts(theater.theater_id, now)
            counted_vessels: list[MilitaryAsset] = []
            if cached is not None:
                for name, value in cached.items():
                    setattr(summary, name, value)
                summary.vessels_from_cache = True
            elif live_vessels or feed_up:
                # A failed query without cached counts keeps whatever its siblings reported.
                counted_vessels = in_vessels
                for asset in in_vessels:
                    bucket = _VESSEL_BUCKETS.get(asset.asset_type, "auxiliary_vessels")
                    setattr(summary, bucket, getattr(summary, bucket) + 1)
                    operators[asset.operator or "unknown"] += 1
            if live_vessels:
                await self._store_vessel_counts(theater.theater_id, summary.vessel_counts(), now)
            summary.total_vessels = sum(summary.vessel_counts().values())

            summary.by_operator = dict(sorted(operators.items(), key=lambda kv: (-kv[1], kv[0])))
            summary.strike_capable = summary.bombers > 0 or summary.carriers > 0
            summary.posture_level = self.posture_level(theater, summary)
            summary.trend, summary.change_percent = self._trend(theater.theater_id, summary.total_assets)
            if summary.posture_level != "normal":
                summary.target_nation = self.target_nation(theater, in_aircraft + counted_vessels)

            previous = self._summaries.get(theater.theater_id)
            if previous is not None and previous.posture_level != summary.posture_level:
                logger.info(
                    "Theater %s posture %s -> %s (%d assets)",
                    theater.theater_id,
                    previous.posture_level,
                    summary.posture_level,
                    summary.total_assets,
                )
            self._summaries[theater.theater_id] = summary
            return summary

    async def refresh(
        self,
        aircraft: Iterable[MilitaryAsset],
        vessels: Iterable[MilitaryAsset],
        now: Optional[datetime] = None,
        vessels_ok: bool = True,
        stale_theaters: Iterable[str] = (),
    ) -> list[TheaterPostureSummary]:
        """Recompute every theater from the latest asset snapshots.

        ``stale_theaters`` names theaters whose own vessel query failed; they
        fall back to their cached vessel counts while the rest stay live.
        """
        now = now or self._clock.now()
        aircraft_list = [a for a in aircraft if a.kind == "aircraft"]
        vessel_list = [v for v in vessels if v.kind == "vessel"]
        feed_up = vessels_ok and bool(vessel_list)
        stale = set(stale_theaters)
        self._last_aircraft = aircraft_list
        self._awaiting_live_vessels = not feed_up or bool(stale)

        theaters = self._catalog.theaters()
        results = await asyncio.gather(
            *(
                self._refresh_theater(
                    t, aircraft_list, vessel_list, feed_up and t.theater_id not in stale, now, feed_up=feed_up
                )
                for t in theaters
            ),
            return_exceptions=True,
        )
        for theater, result in zip(theaters, results):
            if isinstance(result, BaseException):
                logger.error("Posture refresh failed for %s: %s", theater.theater_id, result)
        if stale:
            logger.info("Vessel queries failed for theaters %s; using cached counts", sorted(stale))
        self.last_refresh_at = now
        summaries = self.get_summaries()
        for callback in list(self._listeners):
            try:
                await callback(summaries)
            except Exception:
                logger.exception("Posture refresh listener failed")
        return summaries

    def theaters_for(self, keys: Iterable[str]) -> set[str]:
        """Map vessel query keys (theater ids or source names) to the theaters they cover."""
        known = {t.theater_id for t in self._catalog.theaters()}
        out: set[str] = set()
        for key in keys:
            if key in known:
                out.add(key)
            else:
                out.update(self._vessel_coverage.get(key, ()))
        return out

    def _note_vessel_batch(self, key: str, assets: list[MilitaryAsset]) -> None:
        if not assets:
            return
        self._vessel_coverage[key] = {
            t.theater_id
            for t in self._catalog.theaters()
            if any(t.contains(a.latitude, a.longitude) for a in assets)
        }

    # -- Upstream fan-out ----------------------------------------------------

    async def collect(
        self,
        queries: Mapping[str, Callable[[], Awaitable[list[Any]]]],
        kind: str,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ) -> tuple[list[MilitaryAsset], list[str]]:
        """Run keyed asset queries concurrently; a failing query never drops its siblings.

        Returns the merged assets and the keys whose query failed.
        """
        names = sorted(queries)

        async def _run(name: str) -> list[Any]:
            if breakers is None:
                return await queries[name]()
            result = await breakers.get(name).call(queries[name], fallback_key=name, default=[])
            if not result.ok:
                raise result.error or RuntimeError(f"{name} unavailable")
            return result.value

        results = await asyncio.gather(*(_run(name) for name in names), return_exceptions=True)
        assets: list[MilitaryAsset] = []
        failed: list[str] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning("%s query %s failed: %s", kind, name, result)
                failed.append(name)
                continue
            batch: list[MilitaryAsset] = []
            for raw in result or []:
                try:
                    asset = raw if isinstance(raw, MilitaryAsset) else MilitaryAsset.from_mapping(raw, kind=kind)
                except MalformedRecord as exc:
                    logger.debug("Dropping malformed %s record from %s: %s", kind, name, exc)
                    continue
                batch.append(asset)
            if kind == "vessel":
                self._note_vessel_batch(name, batch)
            assets.extend(batch)
        return assets, failed

    async def collect_vessels(
        self,
        queries: Mapping[str, Callable[[], Awaitable[list[Any]]]],
        breakers: Optional[CircuitBreakerRegistry] = None,
    ) -> tuple[list[MilitaryAsset], list[str]]:
        return await self.collect(queries, "vessel", breakers)

    # -- Vessel re-augmentation ----------------------------------------------

    def schedule_vessel_reaugment(self, fetch_vessels: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Retry the vessel feed on the configured schedule until every theater is live again.

        ``fetch_vessels`` returns either a list of vessels or, like
        ``collect_vessels``, a ``(vessels, failed_keys)`` pair.
        """
        if self._reaugment_task is not None and not self._reaugment_task.done():
            return self._reaugment_task
        self._reaugment_task = asyncio.create_task(self._reaugment_loop(fetch_vessels), name="geo-intel:vessel-reaugment")
        return self._reaugment_task

    async def _reaugment_loop(self, fetch_vessels: Callable[[], Awaitable[Any]]) -> bool:
        elapsed = 0.0
        for offset in sorted(self.config.vessel_retry_schedule):
            await asyncio.sleep(max(0.0, offset - elapsed))
            elapsed = offset
            if not self._awaiting_live_vessels:
                return True
            try:
                result = await fetch_vessels()
            except Exception as exc:
                logger.warning("Vessel re-augmentation at +%.0fs failed: %s", offset, exc)
                continue
            vessels, failed = result if isinstance(result, tuple) else (result, [])
            if vessels:
                logger.info("Vessel re-augmentation at +%.0fs got %d vessels", offset, len(vessels))
                await self.refresh(self._last_aircraft, vessels, stale_theaters=self.theaters_for(failed))
                if not self._awaiting_live_vessels:
                    return True
        return False

    # -- Reads ---------------------------------------------------------------

    def get_summaries(self) -> list[TheaterPostureSummary]:
        rows = list(self._summaries.values())
        rows.sort(key=lambda s: (LEVEL_ORDER.get(s.posture_level, 9), -s.total_assets, s.theater_id))
        return rows

    def get_summary(self, theater_id: str) -> Optional[TheaterPostureSummary]:
        return self._summaries.get(theater_id)

    def count_by_level(self, summaries: Optional[Iterable[TheaterPostureSummary]] = None) -> dict[str, int]:
        rows = self._summaries.values() if summaries is None else summaries
        counts = Counter(s.posture_level for s in rows)
        return {level: counts.get(level, 0) for level in ("critical", "elevated", "normal")}

    async def aclose(self) -> None:
        task, self._reaugment_task = self._reaugment_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def get_health(self) -> dict[str, Any]:
        return {
            "theaters": len(self._summaries),
            "awaiting_live_vessels": self._awaiting_live_vessels,
            "vessels_from_cache": sorted(s.theater_id for s in self._summaries.values() if s.vessels_from_cache),
            "last_refresh_at": to_iso(self.last_refresh_at),
            **self.count_by_level(),
        }
