"""Geo-intel API routes (engine-backed)."""

from __future__ import annotations

from typing import Any, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from services.geo_intel.engine import GeoIntelEngine
from utils.logger import api_logger

router = APIRouter(tags=["geo-intel"])


def get_engine(request: Request) -> GeoIntelEngine:
    engine = getattr(request.app.state, "geo_intel_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Geo-intel engine not started")
    return engine


@router.post("/geo-intel/signals")
async def post_signals(
    payload: Union[list[dict[str, Any]], dict[str, Any]],
    engine: GeoIntelEngine = Depends(get_engine),
):
    """Ingest one signal or a list of signals; malformed records are dropped."""
    records = payload if isinstance(payload, list) else [payload]
    result = await engine.ingest_signals(records)
    if result["dropped"]:
        api_logger.info("Dropped malformed signals", dropped=result["dropped"], accepted=result["accepted"])
    return result


@router.get("/geo-intel/convergence")
async def get_convergence_zones(engine: GeoIntelEngine = Depends(get_engine)):
    zones = engine.get_convergence_zones()
    return {"zones": [z.to_dict() for z in zones], "total": len(zones)}


@router.get("/geo-intel/countries")
async def get_country_scores(
    min_score: float = Query(0.0, ge=0.0, le=100.0),
    limit: int = Query(50, ge=1, le=250),
    engine: GeoIntelEngine = Depends(get_engine),
):
    scores = [s for s in await engine.get_country_scores() if s.score >= min_score][:limit]
    return {
        "scores": [s.to_dict() for s in scores],
        "total": len(scores),
        "learning": engine.cii.get_learning_progress(),
    }


@router.get("/geo-intel/countries/{code}")
async def get_country_score(code: str, engine: GeoIntelEngine = Depends(get_engine)):
    score = await engine.get_country_score(code)
    if score is None:
        raise HTTPException(status_code=404, detail=f"No instability score for {code.upper()}")
    return score.to_dict()


@router.get("/geo-intel/posture")
async def get_theater_postures(engine: GeoIntelEngine = Depends(get_engine)):
    summaries = await engine.get_theater_postures()
    return {
        "theaters": [s.to_dict() for s in summaries],
        "total": len(summaries),
        "by_level": engine.posture.count_by_level(summaries),
        "stale": any(s.stale for s in summaries),
    }


@router.get("/geo-intel/risk")
async def get_strategic_risk(engine: GeoIntelEngine = Depends(get_engine)):
    overview = await engine.get_strategic_risk_overview()
    return overview.to_dict()


@router.get("/geo-intel/alerts")
async def get_recent_alerts(
    hours: float = Query(24.0, gt=0.0, le=168.0),
    engine: GeoIntelEngine = Depends(get_engine),
):
    alerts = await engine.get_recent_alerts(hours)
    return {"alerts": [a.to_dict() for a in alerts], "total": len(alerts), "hours": hours}


@router.get("/geo-intel/focal-points")
async def get_focal_points(engine: GeoIntelEngine = Depends(get_engine)):
    points = engine.get_focal_points()
    return {"focal_points": [p.to_dict() for p in points], "ai_context": engine.focal.ai_context}


@router.get("/geo-intel/health")
async def get_geo_intel_health(engine: GeoIntelEngine = Depends(get_engine)):
    return engine.get_health()
