"""Scoring weights and thresholds catalog.

Every heuristic coefficient used by the convergence, CII, focal-point and
risk computations lives here so operators can retune without a deploy.
"""

from __future__ import annotations

from typing import Any, Optional
from pathlib import Path

from .catalog_loader import GeoIntelJsonCatalog

_DEFAULT: dict[str, Any] = {
    "version": 0,
    "updated_at": None,
    "convergence": {
        "type_points": 25.0,
        "signal_points": 2.0,
        "signal_points_cap": 25.0,
        "severity_points": 20.0,
        "urgency": {
            "critical_types": 4,
            "critical_score": 80.0,
            "high_types": 3,
            "high_score": 65.0,
            "elevated_score": 50.0,
        },
    },
    "cii": {
        "baseline_weight": 0.4,
        "component_weights": {"unrest": 0.25, "conflict": 0.3, "security": 0.2, "information": 0.25},
        "component_scales": {"unrest": 30.0, "conflict": 25.0, "security": 12.0, "information": 22.0},
        "component_types": {
            "unrest": ["protest"],
            "conflict": ["armed_conflict"],
            "security": ["military_flight", "military_vessel"],
            "information": ["internet_outage", "cyber_incident", "cable_advisory"],
        },
        "news_conflict_points": 0.5,
        "levels": {"critical": 81.0, "high": 66.0, "elevated": 51.0, "normal": 31.0},
        "spike_threshold": 15.0,
    },
    "focal": {
        "news_weight": 3.0,
        "signal_weight": 4.0,
        "type_weight": 10.0,
        "cii_divisor": 10.0,
        "critical_types": 3,
        "critical_score": 70.0,
        "elevated_types": 2,
        "elevated_score": 40.0,
    },
    "risk": {
        "weights": {"convergence": 0.3, "cii": 0.3, "infrastructure": 0.15, "posture": 0.25},
        "convergence_points_per_zone": 25.0,
        "cii_deviation_multiplier": 2.0,
        "infrastructure_points_per_incident": 10.0,
        "posture_points_critical": 50.0,
        "posture_points_elevated": 20.0,
        "levels": {"critical": 70.0, "elevated": 50.0, "moderate": 30.0},
        "trend_threshold": 5.0,
        "trend_window": 3,
        "trend_lookback_hours": 6.0,
        "cascade_radius_km": 300.0,
        "cascade_country_incidents": 3,
        "composite_alert_threshold": 70.0,
        "infrastructure_types": ["internet_outage", "cable_advisory", "cyber_incident"],
    },
    "conflict_keywords": [
        "airstrike", "air strike", "attack", "bombing", "clashes", "coup",
        "drone strike", "explosion", "invasion", "killed", "missile",
        "offensive", "shelling", "troops", "war",
    ],
}


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _float_map(raw: Any, defaults: dict[str, float]) -> dict[str, float]:
    out = dict(defaults)
    if isinstance(raw, dict):
        for key, value in raw.items():
            out[str(key)] = _as_float(value, out.get(str(key), 0.0))
    return out


class ScoringCatalog:
    def __init__(self, data_root: Optional[Path] = None) -> None:
        self._catalog = GeoIntelJsonCatalog("scoring.json", _DEFAULT, data_root=data_root)

    def payload(self) -> dict[str, Any]:
        return self._catalog.payload()

    def convergence(self) -> dict[str, Any]:
        merged = dict(_DEFAULT["convergence"])
        merged.update(self._catalog.section("convergence"))
        urgency = dict(_DEFAULT["convergence"]["urgency"])
        if isinstance(merged.get("urgency"), dict):
            urgency.update(merged["urgency"])
        merged["urgency"] = urgency
        return merged

    def cii(self) -> dict[str, Any]:
        defaults = _DEFAULT["cii"]
        raw = self._catalog.section("cii")
        component_types = dict(defaults["component_types"])
        if isinstance(raw.get("component_types"), dict):
            for name, values in raw["component_types"].items():
                if isinstance(values, list):
                    component_types[str(name)] = [str(v) for v in values]
        return {
            "baseline_weight": min(1.0, max(0.0, _as_float(raw.get("baseline_weight"), defaults["baseline_weight"]))),
            "component_weights": _float_map(raw.get("component_weights"), defaults["component_weights"]),
            "component_scales": _float_map(raw.get("component_scales"), defaults["component_scales"]),
            "component_types": component_types,
            "news_conflict_points": _as_float(raw.get("news_conflict_points"), defaults["news_conflict_points"]),
            "levels": _float_map(raw.get("levels"), defaults["levels"]),
            "spike_threshold": _as_float(raw.get("spike_threshold"), defaults["spike_threshold"]),
        }

    def focal(self) -> dict[str, float]:
        return _float_map(self._catalog.section("focal"), _DEFAULT["focal"])

    def risk(self) -> dict[str, Any]:
        defaults = _DEFAULT["risk"]
        raw = self._catalog.section("risk")
        out: dict[str, Any] = {}
        for key, default in defaults.items():
            if isinstance(default, dict):
                out[key] = _float_map(raw.get(key), default)
            elif isinstance(default, list):
                value = raw.get(key)
                out[key] = [str(v) for v in value] if isinstance(value, list) else list(default)
            else:
                out[key] = _as_float(raw.get(key), float(default))
        return out

    def conflict_keywords(self) -> list[str]:
        raw = self.payload().get("conflict_keywords") or []
        return sorted({str(v).strip().lower() for v in raw if str(v).strip()})
