"""Geo-intel composition root.

``GeoIntelEngine`` builds the stores, tiered cache, circuit breakers and
every correlation component once, wires them together, and exposes the
read/ingest operations used by the API and the worker.  Nothing here is a
process-wide singleton; each engine owns its own state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Optional

from config import settings
from models.database import AsyncSessionLocal
from utils.clock import Clock, system_clock, to_iso

from .cache import DURABLE, TieredCache
from .circuit_breaker import CircuitBreakerRegistry
from .convergence_detector import ConvergenceConfig, ConvergenceDetector, ConvergenceZone
from .country_catalog import CountryCatalog
from .entity_catalog import EntityCatalog
from .errors import InsufficientData, UpstreamError
from .focal_point_detector import FocalConfig, FocalPoint, FocalPointDetector, NewsItem
from .freshness import DataFreshnessTracker
from .instability_scorer import CIIConfig, CountryScore, InstabilityScorer
from .interfaces import SOURCE_CATEGORIES, DurableStore, Scheduler, SharedCacheStore, SignalSource
from .risk_aggregator import STALE, RiskAggregator, RiskConfig, StrategicRiskOverview, UnifiedAlert
from .scheduling import Debouncer, IntervalScheduler, RefreshGuard
from .scoring_catalog import ScoringCatalog
from .signal_aggregator import Signal, SignalAggregator, SignalAggregatorConfig
from .stores import InMemoryDurableStore, InMemorySharedCache, SqlDurableStore, SqlSharedCache
from .theater_catalog import TheaterCatalog
from .theater_posture import MilitaryAsset, PostureConfig, TheaterPostureEngine, TheaterPostureSummary

logger = logging.getLogger(__name__)

RISK_CACHE_KEY = "risk:overview"
POSTURE_CACHE_KEY = "posture:summaries"
CII_SCORES_KEY = "cii:scores"
DIRECT_INGEST_SOURCE = "direct-ingest"

TOPIC_SIGNALS = "signals"
TOPIC_CONVERGENCE = "convergence"
TOPIC_CII = "cii"
TOPIC_POSTURE = "posture"
TOPIC_FOCAL = "focal"
TOPIC_RISK = "risk"
TOPIC_FRESHNESS = "freshness"


@dataclass
class _RegisteredSource:
    source: SignalSource
    interval_seconds: float
    required_for_risk: bool
    timeout_seconds: Optional[float]
    guard: RefreshGuard


class GeoIntelEngine:
    def __init__(
        self,
        clock: Optional[Clock] = None,
        shared_store: Optional[SharedCacheStore] = None,
        durable_store: Optional[DurableStore] = None,
        scheduler: Optional[Scheduler] = None,
        countries: Optional[CountryCatalog] = None,
        theaters: Optional[TheaterCatalog] = None,
        entities: Optional[EntityCatalog] = None,
        scoring: Optional[ScoringCatalog] = None,
        aggregator_config: Optional[SignalAggregatorConfig] = None,
        convergence_config: Optional[ConvergenceConfig] = None,
        cii_config: Optional[CIIConfig] = None,
        posture_config: Optional[PostureConfig] = None,
        focal_config: Optional[FocalConfig] = None,
        risk_config: Optional[RiskConfig] = None,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        self.clock = clock or system_clock
        scoring = scoring or ScoringCatalog()
        self.countries = countries or CountryCatalog()
        self.shared_store = shared_store if shared_store is not None else InMemorySharedCache(self.clock)
        self.durable_store = durable_store if durable_store is not None else InMemoryDurableStore(self.clock)

        self.cache = TieredCache(
            shared_store=self.shared_store,
            durable_store=self.durable_store,
            clock=self.clock,
        )
        self.breakers = CircuitBreakerRegistry(clock=self.clock)
        self.freshness = DataFreshnessTracker(clock=self.clock)
        self.freshness.register(DIRECT_INGEST_SOURCE, "Direct signal ingest")

        self.aggregator = SignalAggregator(aggregator_config, clock=self.clock, countries=self.countries)
        self.convergence = ConvergenceDetector(
            convergence_config or ConvergenceConfig.from_settings(scoring), countries=self.countries
        )
        self.aggregator.attach_convergence(self.convergence)
        self.cii = InstabilityScorer(
            cii_config or CIIConfig.from_settings(scoring),
            clock=self.clock,
            countries=self.countries,
            cache=self.cache,
        )
        self.posture = TheaterPostureEngine(
            theaters or TheaterCatalog(countries=self.countries),
            config=posture_config,
            clock=self.clock,
            durable_store=self.durable_store,
        )
        self.focal = FocalPointDetector(
            focal_config or FocalConfig.from_settings(scoring),
            countries=self.countries,
            entities=entities,
            scoring=scoring,
        )
        self.risk = RiskAggregator(risk_config or RiskConfig.from_settings(scoring), clock=self.clock, countries=self.countries)

        self.scheduler: Scheduler = scheduler or IntervalScheduler()
        self._debouncer = Debouncer(
            debounce_seconds if debounce_seconds is not None else settings.GEO_INTEL_NOTIFY_DEBOUNCE_SECONDS,
            self._notify,
        )
        self._subscribers: list[Callable[[set[str]], Any]] = []
        self._sources: dict[str, _RegisteredSource] = {}
        self._asset_batches: dict[str, list[MilitaryAsset]] = {}
        self._source_ok: dict[str, bool] = {}
        self._news: list[NewsItem] = []
        self._fetches: set[asyncio.Task] = set()
        self._risk_dirty = True
        self._started = False
        self._closed = False
        self.freshness.subscribe(lambda _source_id: self._changed(TOPIC_FRESHNESS))
        self.posture.on_refresh(self._publish_posture)

    # -- Notifications -------------------------------------------------------

    def subscribe(self, callback: Callable[[set[str]], Any]) -> Callable[[], None]:
        """Register for debounced change notifications; returns an unsubscribe callable."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    async def _notify(self, topics: set[str]) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(set(topics))
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Geo-intel subscriber failed for topics %s", sorted(topics))

    def _changed(self, *topics: str) -> None:
        if TOPIC_RISK not in topics:
            self._risk_dirty = True
        if self._closed:
            return
        try:
            for topic in topics:
                self._debouncer.trigger(topic)
        except RuntimeError:
            # No running loop (synchronous caller); notifications resume on the next async change.
            logger.debug("Change notification skipped outside an event loop")

    async def flush_notifications(self) -> None:
        await self._debouncer.flush()

    # -- Signal ingest -------------------------------------------------------

    async def _after_signals(self, stored: list[Signal]) -> None:
        self.convergence.refresh(self.aggregator, self.clock.now())
        await self.cii.on_signals(stored)
        await self._publish_cii()
        self._changed(TOPIC_SIGNALS, TOPIC_CONVERGENCE, TOPIC_CII)

    async def ingest_signal(self, record: Signal | dict[str, Any]) -> bool:
        """Store one pushed signal; False when it was malformed or a duplicate."""
        signal = self.aggregator.store(record)
        if signal is None:
            return False
        self.freshness.record_update(DIRECT_INGEST_SOURCE, 1)
        await self._after_signals([signal])
        return True

    async def ingest_signals(self, records: Iterable[Signal | dict[str, Any]]) -> dict[str, int]:
        records = list(records)
        stored, malformed = self.aggregator.ingest_many(records)
        if stored:
            self.freshness.record_update(DIRECT_INGEST_SOURCE, len(stored))
            await self._after_signals(stored)
        return {
            "accepted": len(stored),
            "dropped": malformed,
            "duplicates": len(records) - len(stored) - malformed,
        }

    async def ingest_news(self, records: Iterable[NewsItem | dict[str, Any]]) -> list[FocalPoint]:
        self._news = self.focal.coerce_news(records)
        await self.cii.on_news_conflict(self.focal.news_conflict_counts(self._news))
        await self._publish_cii()
        points = self._analyze_focal()
        self._changed(TOPIC_FOCAL, TOPIC_CII)
        return points

    def _analyze_focal(self) -> list[FocalPoint]:
        cii_map = {s.code: s.score for s in self.cii.get_all_scores()}
        summary = self.aggregator.get_summary(include_all_countries=True)
        return self.focal.analyze(self._news, summary, cii_map, now=self.clock.now())

    # -- Sources -------------------------------------------------------------

    def register_source(
        self,
        source: SignalSource,
        interval_seconds: Optional[float] = None,
        required_for_risk: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        if source.category not in SOURCE_CATEGORIES:
            raise ValueError(f"Unknown source category {source.category!r} for {source.name}")
        if source.name in self._sources:
            raise ValueError(f"Source {source.name!r} already registered")
        self._sources[source.name] = _RegisteredSource(
            source=source,
            interval_seconds=float(interval_seconds or settings.GEO_INTEL_SIGNAL_POLL_SECONDS),
            required_for_risk=required_for_risk,
            timeout_seconds=timeout_seconds,
            guard=RefreshGuard(source.name),
        )
        self.freshness.register(source.name, source.name, required_for_risk=required_for_risk)
        if self._started:
            self._schedule_source(self._sources[source.name])
        logger.info("Registered geo-intel source %s (%s)", source.name, source.category)

    def sources(self) -> list[str]:
        return sorted(self._sources)

    async def poll_source(self, name: str) -> int:
        """Poll one source through its breaker; returns records accepted.

        Overlapping polls of the same source are skipped.  Upstream failures
        are recorded on the breaker and freshness tracker, never raised.
        """
        entry = self._sources.get(name)
        if entry is None:
            raise KeyError(name)
        accepted = 0

        async def _run() -> None:
            nonlocal accepted
            accepted = await self._poll(entry)

        await entry.guard.run(_run)
        return accepted

    async def poll_all(self) -> dict[str, Any]:
        """Poll every registered source concurrently; a failing branch never aborts siblings."""
        names = self.sources()
        results = await asyncio.gather(*(self.poll_source(n) for n in names), return_exceptions=True)
        out: dict[str, Any] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error("Poll of %s failed: %s", name, result)
                out[name] = str(result)
            else:
                out[name] = result
        return out

    async def _fetch(self, entry: _RegisteredSource):
        breaker = self.breakers.get(entry.source.category)
        task = asyncio.create_task(
            breaker.call(
                entry.source.fetch,
                fallback_key=entry.source.name,
                default=[],
                timeout_seconds=entry.timeout_seconds,
            ),
            name=f"geo-intel:fetch:{entry.source.name}",
        )
        self._fetches.add(task)
        task.add_done_callback(self._fetches.discard)
        return await task

    def _guarded_fetch(self, entry: _RegisteredSource):
        async def _run() -> list[Any]:
            result = await self._fetch(entry)
            if not result.ok:
                raise result.error or UpstreamError(entry.source.name, "circuit open")
            return list(result.value or [])

        return _run

    async def _poll(self, entry: _RegisteredSource) -> int:
        source = entry.source
        try:
            result = await self._fetch(entry)
        except asyncio.CancelledError:
            if self._closed:
                logger.info("Poll of %s cancelled during shutdown; results discarded", source.name)
                return 0
            raise
        if self._closed:
            return 0

        if result.ok:
            self.freshness.record_update(source.name, len(result.value or []))
        else:
            self.freshness.record_error(source.name, result.error or "circuit open")
        self._source_ok[source.name] = result.ok
        records = list(result.value or [])

        if source.category == "signals":
            stored, malformed = self.aggregator.ingest_many(records)
            if malformed:
                logger.info("Dropped %d malformed records from %s", malformed, source.name)
            if stored:
                await self._after_signals(stored)
            return len(stored)

        if source.category == "news":
            points = await self.ingest_news(records)
            return len(points)

        assets, _ = await self.posture.collect(
            {source.name: _static(records)}, "aircraft" if source.category == "aircraft" else "vessel"
        )
        self._asset_batches[source.name] = assets
        await self.refresh_posture()
        return len(assets)

    # -- Posture -------------------------------------------------------------

    def _category_sources(self, category: str) -> list[str]:
        return sorted(n for n, e in self._sources.items() if e.source.category == category)

    async def refresh_posture(self) -> list[TheaterPostureSummary]:
        aircraft: list[MilitaryAsset] = []
        for name in self._category_sources("aircraft"):
            aircraft.extend(self._asset_batches.get(name, []))
        vessel_sources = self._category_sources("vessels")
        live_sources = [n for n in vessel_sources if self._source_ok.get(n)]
        failed_sources = [n for n in vessel_sources if not self._source_ok.get(n)]
        vessels: list[MilitaryAsset] = []
        for name in live_sources:
            vessels.extend(self._asset_batches.get(name, []))

        # Only the theaters a failed source last covered fall back to cached counts.
        summaries = await self.posture.refresh(
            aircraft,
            vessels,
            self.clock.now(),
            vessels_ok=bool(live_sources),
            stale_theaters=self.posture.theaters_for(failed_sources),
        )
        if vessel_sources and self.posture.awaiting_live_vessels and not self._closed:
            self.posture.schedule_vessel_reaugment(self._fetch_live_vessels)
        return summaries

    async def _fetch_live_vessels(self) -> tuple[list[MilitaryAsset], list[str]]:
        """Re-query every vessel source separately; returns the merged vessels and the failed sources."""
        names = self._category_sources("vessels")
        results = await asyncio.gather(
            *(self.posture.collect_vessels({name: self._guarded_fetch(self._sources[name])}) for name in names)
        )
        assets: list[MilitaryAsset] = []
        failed: list[str] = []
        for name, (batch, batch_failed) in zip(names, results):
            if batch_failed:
                self._source_ok[name] = False
                failed.append(name)
                continue
            self._source_ok[name] = True
            self._asset_batches[name] = batch
            self.freshness.record_update(name, len(batch))
        for name in names:
            if self._source_ok.get(name):
                assets.extend(self._asset_batches.get(name, []))
        return assets, failed

    async def ingest_assets(self, aircraft: Iterable[Any] = (), vessels: Iterable[Any] = ()) -> list[TheaterPostureSummary]:
        """Refresh posture from pushed asset snapshots rather than polled sources."""
        air, _ = await self.posture.collect({DIRECT_INGEST_SOURCE: _static(list(aircraft))}, "aircraft")
        sea, _ = await self.posture.collect({DIRECT_INGEST_SOURCE: _static(list(vessels))}, "vessel")
        summaries = await self.posture.refresh(air, sea, self.clock.now(), vessels_ok=bool(sea))
        self.freshness.record_update(DIRECT_INGEST_SOURCE, len(air) + len(sea))
        return summaries

    async def _publish_posture(self, summaries: list[TheaterPostureSummary]) -> None:
        await self.cache.set(POSTURE_CACHE_KEY, [s.to_dict() for s in summaries])
        self._changed(TOPIC_POSTURE)

    async def _compute_posture_payload(self) -> list[dict[str, Any]]:
        if self.posture.last_refresh_at is None:
            raise InsufficientData("theater posture has not been computed yet")
        return [s.to_dict() for s in self.posture.get_summaries()]

    # -- Periodic work -------------------------------------------------------

    async def tick(self) -> None:
        """Prune, re-detect convergence, decay CII and recompute the overview."""
        now = self.clock.now()
        self.aggregator.prune(now)
        self.convergence.refresh(self.aggregator, now)
        await self.cii.tick(now)
        await self._publish_cii()
        if self._news:
            self._analyze_focal()
        self._changed(TOPIC_CONVERGENCE, TOPIC_CII)
        await self.refresh_risk()

    async def refresh_risk(self) -> StrategicRiskOverview:
        """Recompute the overview from local state and publish it to every cache tier."""
        overview = self._compute_risk()
        await self.cache.set(RISK_CACHE_KEY, overview.to_dict())
        self._changed(TOPIC_RISK)
        return overview

    def _compute_risk(self) -> StrategicRiskOverview:
        overview = self.risk.compute(
            zones=self.convergence.get_active_zones(),
            cii_scores=self.cii.get_all_scores(),
            avg_deviation=self.cii.average_deviation(),
            cii_spikes=self.cii.get_spikes(),
            signals=self.aggregator.active_signals(),
            postures=self.posture.get_summaries(),
            freshness=self.freshness.get_summary(),
            focal_points=self.focal.get_focal_points(),
        )
        self._risk_dirty = False
        return overview

    async def _compute_risk_payload(self) -> dict[str, Any]:
        if not self._has_live_data():
            raise InsufficientData("no live geo-intel data to score")
        overview = self._compute_risk()
        self._changed(TOPIC_RISK)
        return overview.to_dict()

    async def _publish_cii(self) -> None:
        scores = self.cii.get_all_scores()
        if scores:
            await self.cache.set(CII_SCORES_KEY, [s.to_dict() for s in scores])

    async def _compute_cii_payload(self) -> list[dict[str, Any]]:
        scores = self.cii.get_all_scores()
        if not scores:
            raise InsufficientData("no country is tracked yet")
        return [s.to_dict() for s in scores]

    def _has_live_data(self) -> bool:
        return self.aggregator.count() > 0 or int(self.freshness.get_summary()["active_sources"]) > 0

    # -- Reads ---------------------------------------------------------------
    #
    # Table reads go through the tiered cache, so a process without live
    # data (the API next to a worker, or a fresh restart) serves what was
    # last published.  Durable-tier values are marked stale.

    def get_convergence_zones(self) -> list[ConvergenceZone]:
        return self.convergence.get_active_zones()

    async def get_country_score(self, code: str) -> Optional[CountryScore]:
        """Look up by ISO2 code or by country name/alias."""
        wanted = (self.countries.normalize_code(code) or str(code or "")).strip().upper()
        for score in await self.get_country_scores():
            if score.code == wanted:
                return score
        return None

    async def get_country_scores(self) -> list[CountryScore]:
        try:
            result = await self.cache.get_or_compute(CII_SCORES_KEY, self._compute_cii_payload)
        except InsufficientData:
            return []
        return [CountryScore.from_dict(row) for row in result.value or []]

    async def get_theater_postures(self) -> list[TheaterPostureSummary]:
        try:
            result = await self.cache.get_or_compute(POSTURE_CACHE_KEY, self._compute_posture_payload)
        except InsufficientData:
            return []
        summaries = [TheaterPostureSummary.from_dict(row) for row in result.value or []]
        if result.tier == DURABLE:
            summaries = [replace(s, stale=True) for s in summaries]
        return summaries

    async def get_strategic_risk_overview(self) -> StrategicRiskOverview:
        if self._risk_dirty and self._has_live_data():
            return await self.refresh_risk()
        try:
            result = await self.cache.get_or_compute(RISK_CACHE_KEY, self._compute_risk_payload)
        except InsufficientData:
            # Nothing live and nothing published: report insufficient without caching it.
            return self._compute_risk()
        overview = StrategicRiskOverview.from_dict(result.value)
        if result.tier == DURABLE:
            overview = replace(overview, status=STALE)
        return overview

    async def get_recent_alerts(self, hours: float = 24.0) -> list[UnifiedAlert]:
        if self._risk_dirty and self._has_live_data():
            await self.refresh_risk()
        return self.risk.get_recent_alerts(hours)

    def get_focal_points(self) -> list[FocalPoint]:
        return self.focal.get_focal_points()

    def get_signal_summary(self) -> dict[str, Any]:
        summary = self.aggregator.get_summary()
        summary["focal_context"] = self.focal.ai_context
        return summary

    def get_freshness(self) -> dict[str, Any]:
        return self.freshness.get_summary()

    def get_health(self) -> dict[str, Any]:
        breakers = self.breakers.get_status()
        freshness = self.freshness.get_summary()
        open_breakers = sorted(n for n, s in breakers.items() if s["state"] != "closed")
        if freshness["active_sources"] == 0:
            status = "insufficient"
        elif open_breakers or freshness["missing_required"]:
            status = "degraded"
        else:
            status = "ok"
        return {
            "status": status,
            "timestamp": to_iso(self.clock.now()),
            "started": self._started,
            "scheduled_jobs": self.scheduler.jobs() if isinstance(self.scheduler, IntervalScheduler) else [],
            "open_breakers": open_breakers,
            "breakers": breakers,
            "freshness": freshness,
            "signals": {
                "buffered": self.aggregator.count(),
                "ingested": self.aggregator.ingested_count,
                "dropped": self.aggregator.dropped_count,
                "duplicates": self.aggregator.duplicate_count,
            },
            "cache": self.cache.get_health(),
            "cii": self.cii.get_health(),
            "posture": self.posture.get_health(),
            "risk": self.risk.get_health(),
        }

    # -- Lifecycle -----------------------------------------------------------

    def _schedule_source(self, entry: _RegisteredSource) -> None:
        name = entry.source.name

        async def _poll() -> None:
            await self.poll_source(name)

        self.scheduler.every(entry.interval_seconds, _poll, f"poll:{name}")

    async def start(self, hydrate: bool = True) -> None:
        """Restore cached state and schedule polling and periodic ticks."""
        if self._started:
            return
        if hydrate:
            restored = await self.cii.hydrate()
            logger.info("Geo-intel CII %s", "restored from cache" if restored else "cold start (learning)")
        for entry in self._sources.values():
            self._schedule_source(entry)
        self.scheduler.every(settings.GEO_INTEL_CII_TICK_SECONDS, self.tick, "tick")
        self.scheduler.every(settings.GEO_INTEL_POSTURE_REFRESH_SECONDS, self.refresh_posture, "posture")
        self.scheduler.every(settings.GEO_INTEL_RISK_REFRESH_SECONDS, self.refresh_risk, "risk")
        self._started = True
        logger.info("Geo-intel engine started with %d sources", len(self._sources))

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.scheduler.cancel_all()
        fetches = list(self._fetches)
        for task in fetches:
            task.cancel()
        if fetches:
            await asyncio.gather(*fetches, return_exceptions=True)
        await self.posture.aclose()
        self._debouncer.cancel()
        await self.cache.aclose()
        self._started = False
        logger.info("Geo-intel engine closed")


def build_sql_engine(session_factory=None, clock: Optional[Clock] = None, **kwargs: Any) -> GeoIntelEngine:
    """Engine whose shared and durable tiers live in the SQL database."""
    factory = session_factory or AsyncSessionLocal
    return GeoIntelEngine(
        clock=clock,
        shared_store=SqlSharedCache(factory, clock),
        durable_store=SqlDurableStore(factory, clock),
        **kwargs,
    )


def _static(records: list[Any]):
    async def _fetch() -> list[Any]:
        return records

    return _fetch
