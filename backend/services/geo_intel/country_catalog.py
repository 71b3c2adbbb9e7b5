"""Country reference catalog: names, aliases, reference points, priors."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .catalog_loader import GeoIntelJsonCatalog
from .geo import in_box

logger = logging.getLogger(__name__)

_DEFAULT = {
    "version": 0,
    "updated_at": None,
    "default_baseline_risk": 12.0,
    "default_event_multiplier": 1.0,
    "countries": [],
}


@dataclass(frozen=True)
class CountryInfo:
    code: str  # ISO 3166-1 alpha-2
    name: str
    latitude: float
    longitude: float
    bbox: tuple[float, float, float, float]  # south, west, north, east
    baseline_risk: float
    event_multiplier: float
    terms: tuple[str, ...] = ()

    @property
    def bbox_area(self) -> float:
        south, west, north, east = self.bbox
        return max(0.0, north - south) * max(0.0, east - west)

    def contains(self, lat: float, lon: float) -> bool:
        south, west, north, east = self.bbox
        return in_box(lat, lon, south, west, north, east)


def _parse_row(row: Any, default_baseline: float, default_multiplier: float) -> CountryInfo:
    code = str(row["code"]).strip().upper()
    if len(code) != 2:
        raise ValueError(f"invalid country code {code!r}")
    name = str(row.get("name") or code).strip()
    bbox_raw = row.get("bbox") or []
    if len(bbox_raw) != 4:
        raise ValueError("bbox must be [south, west, north, east]")
    bbox = tuple(float(v) for v in bbox_raw)
    terms: list[str] = [name.lower()]
    for key in ("aliases", "demonyms"):
        for value in row.get(key) or []:
            text = str(value).strip().lower()
            if text:
                terms.append(text)
    capital = str(row.get("capital") or "").strip().lower()
    if capital:
        terms.append(capital)
    return CountryInfo(
        code=code,
        name=name,
        latitude=float(row["lat"]),
        longitude=float(row["lon"]),
        bbox=bbox,  # type: ignore[arg-type]
        baseline_risk=float(row.get("baseline_risk", default_baseline)),
        event_multiplier=float(row.get("event_multiplier", default_multiplier)),
        terms=tuple(dict.fromkeys(terms)),
    )


class CountryCatalog:
    def __init__(self, data_root: Optional[Path] = None) -> None:
        self._catalog = GeoIntelJsonCatalog("countries.json", _DEFAULT, data_root=data_root)
        self._revision: object = object()
        self._rows: dict[str, CountryInfo] = {}
        self._default_baseline = 12.0
        self._default_multiplier = 1.0
        self._patterns: list[tuple[str, re.Pattern[str]]] = []

    def _ensure_loaded(self) -> None:
        revision = self._catalog.revision()
        if revision == self._revision and self._rows:
            return
        payload = self._catalog.payload()
        try:
            self._default_baseline = float(payload.get("default_baseline_risk") or 12.0)
            self._default_multiplier = float(payload.get("default_event_multiplier") or 1.0)
        except (TypeError, ValueError):
            self._default_baseline, self._default_multiplier = 12.0, 1.0

        rows: dict[str, CountryInfo] = {}
        for row in payload.get("countries") or []:
            try:
                info = _parse_row(row, self._default_baseline, self._default_multiplier)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid country row %s: %s", row, exc)
                continue
            rows[info.code] = info
        self._rows = rows
        self._patterns = [
            (info.code, re.compile(r"\b(?:" + "|".join(re.escape(t) for t in info.terms) + r")\b", re.IGNORECASE))
            for info in rows.values()
            if info.terms
        ]
        self._revision = revision

    def all(self) -> list[CountryInfo]:
        self._ensure_loaded()
        return sorted(self._rows.values(), key=lambda c: c.code)

    def get(self, code: Optional[str]) -> Optional[CountryInfo]:
        self._ensure_loaded()
        return self._rows.get(str(code or "").strip().upper())

    def normalize_code(self, value: Optional[str]) -> str:
        """Map a code or country name to its ISO2 code, or ``""``."""
        text = str(value or "").strip()
        if not text:
            return ""
        self._ensure_loaded()
        upper = text.upper()
        if upper in self._rows:
            return upper
        lowered = text.lower()
        for info in self._rows.values():
            if lowered in info.terms:
                return info.code
        return ""

    def country_name(self, code: Optional[str]) -> str:
        info = self.get(code)
        if info is not None:
            return info.name
        return str(code or "").strip()

    def locate(self, lat: float, lon: float) -> Optional[CountryInfo]:
        """Country whose bounding box contains the point.

        Boxes overlap near borders, so the smallest containing box wins.
        """
        self._ensure_loaded()
        matches = [info for info in self._rows.values() if info.contains(lat, lon)]
        if not matches:
            return None
        return min(matches, key=lambda c: (c.bbox_area, c.code))

    def mentioned_in(self, text: str) -> list[str]:
        """Country codes mentioned in free text (names, aliases, demonyms, capitals)."""
        self._ensure_loaded()
        if not text:
            return []
        return sorted(code for code, pattern in self._patterns if pattern.search(text))

    def baseline_risk(self, code: Optional[str]) -> float:
        info = self.get(code)
        return info.baseline_risk if info is not None else self._default_baseline

    def event_multiplier(self, code: Optional[str]) -> float:
        info = self.get(code)
        return info.event_multiplier if info is not None else self._default_multiplier
