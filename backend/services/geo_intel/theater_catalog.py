"""Military posture theaters: bounds, escalation thresholds, candidate targets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .catalog_loader import GeoIntelJsonCatalog
from .country_catalog import CountryCatalog
from .geo import in_box

logger = logging.getLogger(__name__)


def _theater(tid: str, name: str, short: str, n: float, s: float, e: float, w: float, elev: int, crit: int) -> dict:
    return {
        "id": tid,
        "name": name,
        "short_name": short,
        "bounds": {"north": n, "south": s, "east": e, "west": w},
        "thresholds": {"elevated": elev, "critical": crit},
        "targets": [],
    }


_DEFAULT = {
    "version": 0,
    "updated_at": None,
    "defaults": {"critical_bombers": 3, "elevated_fighters": 10},
    "theaters": [
        _theater("iran-theater", "Iran Theater", "IRAN", 42, 20, 65, 30, 8, 20),
        _theater("taiwan-theater", "Taiwan Strait", "TAIWAN", 30, 18, 130, 115, 6, 15),
        _theater("baltic-theater", "Baltic Theater", "BALTIC", 65, 52, 32, 10, 5, 12),
        _theater("blacksea-theater", "Black Sea", "BLACK SEA", 48, 40, 42, 26, 4, 10),
        _theater("korea-theater", "Korean Peninsula", "KOREA", 43, 33, 132, 124, 5, 12),
        _theater("south-china-sea", "South China Sea", "SCS", 25, 5, 121, 105, 6, 15),
        _theater("east-med-theater", "Eastern Mediterranean", "E.MED", 37, 33, 37, 25, 4, 10),
        _theater("israel-gaza-theater", "Israel/Gaza", "GAZA", 34, 29, 36, 33, 3, 8),
        _theater("yemen-redsea-theater", "Yemen/Red Sea", "RED SEA", 22, 11, 54, 32, 4, 10),
    ],
}


@dataclass(frozen=True)
class TargetCandidate:
    code: str
    name: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class PostureThresholds:
    elevated: int
    critical: int
    critical_bombers: int = 3
    elevated_fighters: int = 10


@dataclass(frozen=True)
class Theater:
    theater_id: str
    name: str
    short_name: str
    north: float
    south: float
    east: float
    west: float
    thresholds: PostureThresholds
    targets: tuple[TargetCandidate, ...] = field(default_factory=tuple)

    @property
    def center(self) -> tuple[float, float]:
        return ((self.north + self.south) / 2.0, (self.east + self.west) / 2.0)

    def bounds(self) -> dict[str, float]:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}

    def contains(self, lat: float, lon: float) -> bool:
        return in_box(lat, lon, self.south, self.west, self.north, self.east)


class TheaterCatalog:
    def __init__(self, countries: Optional[CountryCatalog] = None, data_root: Optional[Path] = None) -> None:
        self._catalog = GeoIntelJsonCatalog("theaters.json", _DEFAULT, data_root=data_root)
        self._countries = countries or CountryCatalog(data_root=data_root)

    def _target(self, row: Any) -> Optional[TargetCandidate]:
        if isinstance(row, str):
            row = {"code": row}
        if not isinstance(row, dict):
            return None
        code = str(row.get("code") or "").strip().upper()
        info = self._countries.get(code)
        lat = row.get("lat", info.latitude if info else None)
        lon = row.get("lon", info.longitude if info else None)
        if lat is None or lon is None:
            logger.warning("Theater target %s has no reference point", row)
            return None
        name = str(row.get("name") or (info.name if info else code))
        return TargetCandidate(code=code, name=name, latitude=float(lat), longitude=float(lon))

    def theaters(self) -> list[Theater]:
        payload = self._catalog.payload()
        defaults = payload.get("defaults") or {}
        out: list[Theater] = []
        for row in payload.get("theaters") or []:
            try:
                bounds = row["bounds"]
                thresholds = row.get("thresholds") or {}
                targets = tuple(t for t in (self._target(r) for r in row.get("targets") or []) if t)
                out.append(
                    Theater(
                        theater_id=str(row["id"]),
                        name=str(row.get("name") or row["id"]),
                        short_name=str(row.get("short_name") or row.get("name") or row["id"]),
                        north=float(bounds["north"]),
                        south=float(bounds["south"]),
                        east=float(bounds["east"]),
                        west=float(bounds["west"]),
                        thresholds=PostureThresholds(
                            elevated=int(thresholds.get("elevated", 5)),
                            critical=int(thresholds.get("critical", 12)),
                            critical_bombers=int(
                                thresholds.get("critical_bombers", defaults.get("critical_bombers", 3))
                            ),
                            elevated_fighters=int(
                                thresholds.get("elevated_fighters", defaults.get("elevated_fighters", 10))
                            ),
                        ),
                        targets=targets,
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid theater row %s: %s", row, exc)
        return out
