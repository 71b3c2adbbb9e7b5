"""Geo-intel worker: polls registered sources, runs engine ticks and writes
the strategic risk snapshot to the durable store.

Run from backend dir:
  python -m workers.geo_intel_worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Iterable, Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import init_database
from services.geo_intel.engine import GeoIntelEngine, build_sql_engine
from services.geo_intel.errors import CacheUnavailable
from services.geo_intel.interfaces import SignalSource
from services.geo_intel.stores import SqlSharedCache
from utils.clock import to_iso, utcnow

logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO")),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("geo_intel_worker")

_IDLE_SLEEP_SECONDS = 5
STATUS_KEY = "worker:geo_intel:status"


async def _write_status(engine: GeoIntelEngine, status: dict[str, Any], stats: dict[str, Any]) -> None:
    """Write the worker heartbeat next to the risk snapshot."""
    try:
        await engine.durable_store.set(STATUS_KEY, {"status": status, "stats": stats})
    except CacheUnavailable as exc:
        logger.warning("Failed to write geo-intel worker status: %s", exc)


async def run_cycle(engine: GeoIntelEngine) -> dict[str, Any]:
    """One collection cycle: poll sources, tick, recompute risk."""
    cycle_start = utcnow()
    polled = await engine.poll_all()
    await engine.tick()
    if isinstance(engine.shared_store, SqlSharedCache):
        try:
            purged = await engine.shared_store.purge_expired()
            if purged:
                logger.debug("Purged %d expired shared cache entries", purged)
        except CacheUnavailable as exc:
            logger.warning("Shared cache purge skipped: %s", exc)

    overview = engine.risk.last_overview
    return {
        "polled": polled,
        "buffered_signals": engine.aggregator.count(),
        "convergence_zones": len(engine.get_convergence_zones()),
        "countries_tracked": len(engine.cii.tracked_countries()),
        "composite_score": overview.composite_score if overview else None,
        "risk_status": overview.status if overview else None,
        "cycle_duration_seconds": round((utcnow() - cycle_start).total_seconds(), 2),
    }


async def _run_loop(engine: GeoIntelEngine, interval: float) -> None:
    logger.info("Geo-intel worker started with %d sources", len(engine.sources()))

    if not settings.GEO_INTEL_ENABLED:
        logger.info("Geo-intel is disabled; worker idling")
        while True:
            await asyncio.sleep(60)

    while True:
        try:
            await _write_status(engine, {"running": True, "current_activity": "Running collection cycle..."}, {})
            stats = await run_cycle(engine)
            await _write_status(
                engine,
                {
                    "running": True,
                    "current_activity": "Idle - waiting for next collection cycle.",
                    "last_run_at": to_iso(utcnow()),
                    "interval_seconds": interval,
                },
                stats,
            )
            logger.info(
                "Geo-intel cycle complete: %d signals, %d zones, risk=%s (%s), %.1fs",
                stats["buffered_signals"],
                stats["convergence_zones"],
                stats["composite_score"],
                stats["risk_status"],
                stats["cycle_duration_seconds"],
            )
            await asyncio.sleep(interval)

        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Geo-intel cycle failed: %s", exc)
            await _write_status(
                engine,
                {"running": True, "current_activity": f"Error: {exc}", "last_error": str(exc)},
                {},
            )
            await asyncio.sleep(min(_IDLE_SLEEP_SECONDS, interval))


async def main(sources: Optional[Iterable[SignalSource]] = None) -> None:
    await init_database()
    logger.info("Database initialized")
    engine = build_sql_engine()
    for source in sources or ():
        engine.register_source(source)
    restored = await engine.cii.hydrate()
    logger.info("CII %s", "restored from durable snapshot" if restored else "starting in learning mode")
    try:
        await _run_loop(engine, float(settings.GEO_INTEL_RISK_REFRESH_SECONDS))
    except asyncio.CancelledError:
        logger.info("Geo-intel worker shutting down")
    finally:
        await engine.aclose()


if __name__ == "__main__":
    asyncio.run(main())
