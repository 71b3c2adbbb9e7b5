"""Organization and place keyword table for headline entity extraction."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .catalog_loader import GeoIntelJsonCatalog

logger = logging.getLogger(__name__)

_DEFAULT = {
    "version": 0,
    "updated_at": None,
    "organizations": [],
    "places": [],
}


@dataclass(frozen=True)
class NamedEntity:
    entity_id: str
    display_name: str
    entity_type: str  # "organization" | "place"
    pattern: re.Pattern
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class EntityCatalog:
    def __init__(self, data_root: Optional[Path] = None) -> None:
        self._catalog = GeoIntelJsonCatalog("entities.json", _DEFAULT, data_root=data_root)
        self._revision: object = object()
        self._entities: list[NamedEntity] = []

    def entities(self) -> list[NamedEntity]:
        revision = self._catalog.revision()
        if revision == self._revision:
            return list(self._entities)
        payload = self._catalog.payload()
        out: list[NamedEntity] = []
        for section, entity_type in (("organizations", "organization"), ("places", "place")):
            for row in payload.get(section) or []:
                try:
                    terms = [str(t).strip().lower() for t in row.get("terms") or [] if str(t).strip()]
                    if not terms:
                        terms = [str(row["name"]).lower()]
                    out.append(
                        NamedEntity(
                            entity_id=str(row["id"]),
                            display_name=str(row.get("name") or row["id"]),
                            entity_type=entity_type,
                            pattern=re.compile(
                                r"\b(?:" + "|".join(re.escape(t) for t in terms) + r")\b",
                                re.IGNORECASE,
                            ),
                            country=(str(row["country"]).upper() if row.get("country") else None),
                            latitude=float(row["lat"]) if row.get("lat") is not None else None,
                            longitude=float(row["lon"]) if row.get("lon") is not None else None,
                        )
                    )
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping invalid entity row %s: %s", row, exc)
        self._entities = out
        self._revision = revision
        return list(out)

    def mentioned_in(self, text: str) -> list[NamedEntity]:
        if not text:
            return []
        return [entity for entity in self.entities() if entity.pattern.search(text)]
