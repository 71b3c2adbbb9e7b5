"""Focal point detection: entities where headlines and map signals co-occur.

Headlines are scanned for countries (names, aliases, demonyms, capitals),
organizations and places.  An entity becomes a focal point only when it is
both in the news and carries independent signals in the aggregator
summary; the country's CII score, when known, boosts its rank.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from config import settings
from utils.clock import parse_iso, to_iso, utcnow

from .country_catalog import CountryCatalog
from .entity_catalog import EntityCatalog
from .errors import MalformedRecord
from .scoring_catalog import ScoringCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewsItem:
    title: str
    url: str = ""
    source: str = ""
    published_at: Optional[datetime] = None
    country: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "NewsItem":
        if not isinstance(raw, Mapping):
            raise MalformedRecord(f"expected mapping, got {type(raw).__name__}")
        title = str(raw.get("title") or "").strip()
        if not title:
            raise MalformedRecord("headline without title")
        return cls(
            title=title,
            url=str(raw.get("url") or raw.get("link") or "").strip(),
            source=str(raw.get("source") or "").strip(),
            published_at=parse_iso(raw.get("published_at") or raw.get("pubDate")),
            country=(str(raw.get("country") or "").strip().upper() or None),
        )

    @property
    def key(self) -> str:
        if self.url:
            return self.url
        return "h_" + hashlib.sha256(self.title.lower().encode("utf-8")).hexdigest()[:16]


@dataclass
class FocalPoint:
    entity_id: str
    display_name: str
    entity_type: str  # "country" | "organization" | "place"
    news_mentions: int
    signal_count: int
    signal_types: list[str]
    urgency: str  # "watch" | "elevated" | "critical"
    focal_score: float
    top_headlines: list[dict[str, str]] = field(default_factory=list)
    narrative: str = ""
    country: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "display_name": self.display_name,
            "entity_type": self.entity_type,
            "news_mentions": self.news_mentions,
            "signal_count": self.signal_count,
            "signal_types": list(self.signal_types),
            "urgency": self.urgency,
            "focal_score": self.focal_score,
            "top_headlines": [dict(h) for h in self.top_headlines],
            "narrative": self.narrative,
            "country": self.country,
        }


@dataclass
class FocalConfig:
    news_weight: float = 3.0
    signal_weight: float = 4.0
    type_weight: float = 10.0
    cii_divisor: float = 10.0
    critical_types: int = 3
    critical_score: float = 70.0
    elevated_types: int = 2
    elevated_score: float = 40.0
    max_points: int = 10

    @classmethod
    def from_settings(cls, scoring: Optional[ScoringCatalog] = None) -> "FocalConfig":
        w = (scoring or ScoringCatalog()).focal()
        return cls(
            news_weight=w["news_weight"],
            signal_weight=w["signal_weight"],
            type_weight=w["type_weight"],
            cii_divisor=w["cii_divisor"],
            critical_types=int(w["critical_types"]),
            critical_score=w["critical_score"],
            elevated_types=int(w["elevated_types"]),
            elevated_score=w["elevated_score"],
            max_points=settings.GEO_INTEL_FOCAL_MAX_POINTS,
        )


@dataclass
class _Mention:
    entity_id: str
    display_name: str
    entity_type: str
    country: Optional[str]
    headlines: list[NewsItem] = field(default_factory=list)


class FocalPointDetector:
    def __init__(
        self,
        config: Optional[FocalConfig] = None,
        countries: Optional[CountryCatalog] = None,
        entities: Optional[EntityCatalog] = None,
        scoring: Optional[ScoringCatalog] = None,
    ) -> None:
        scoring = scoring or ScoringCatalog()
        self.config = config or FocalConfig.from_settings(scoring)
        self._countries = countries or CountryCatalog()
        self._entities = entities or EntityCatalog()
        keywords = scoring.conflict_keywords()
        self._conflict_pattern = (
            re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")\b", re.IGNORECASE)
            if keywords
            else None
        )
        self._focal_points: list[FocalPoint] = []
        self._ai_context = ""
        self._computed_at: Optional[datetime] = None

    # -- Extraction ----------------------------------------------------------

    @staticmethod
    def coerce_news(records: Iterable[Any]) -> list[NewsItem]:
        items: list[NewsItem] = []
        for raw in records:
            try:
                items.append(raw if isinstance(raw, NewsItem) else NewsItem.from_mapping(raw))
            except MalformedRecord as exc:
                logger.debug("Dropping malformed news item: %s", exc)
        return items

    def countries_for(self, item: NewsItem) -> list[str]:
        codes = set(self._countries.mentioned_in(item.title))
        if item.country and self._countries.get(item.country) is not None:
            codes.add(item.country)
        return sorted(codes)

    def _mentions(self, news: list[NewsItem]) -> dict[str, _Mention]:
        mentions: dict[str, _Mention] = {}
        for item in news:
            for code in self.countries_for(item):
                m = mentions.setdefault(
                    code,
                    _Mention(code, self._countries.country_name(code), "country", code),
                )
                m.headlines.append(item)
            for entity in self._entities.mentioned_in(item.title):
                country = entity.country
                if country is None and entity.latitude is not None and entity.longitude is not None:
                    located = self._countries.locate(entity.latitude, entity.longitude)
                    country = located.code if located else None
                m = mentions.setdefault(
                    entity.entity_id,
                    _Mention(entity.entity_id, entity.display_name, entity.entity_type, country),
                )
                m.headlines.append(item)
        return mentions

    def news_conflict_counts(self, news: Iterable[Any]) -> dict[str, list[str]]:
        """Conflict-keyword headline keys per country, for the CII conflict component."""
        if self._conflict_pattern is None:
            return {}
        out: dict[str, list[str]] = defaultdict(list)
        for item in self.coerce_news(news):
            if not self._conflict_pattern.search(item.title):
                continue
            for code in self.countries_for(item):
                out[code].append(item.key)
        return dict(out)

    # -- Scoring -------------------------------------------------------------

    def _urgency(self, type_count: int, score: float) -> str:
        cfg = self.config
        if type_count >= cfg.critical_types or score >= cfg.critical_score:
            return "critical"
        if type_count >= cfg.elevated_types or score >= cfg.elevated_score:
            return "elevated"
        return "watch"

    def analyze(
        self,
        news: Iterable[Any],
        summary: Mapping[str, Any],
        cii_scores: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
    ) -> list[FocalPoint]:
        """Correlate headline entities with aggregator signals; pure apart from
        remembering the last result."""
        cfg = self.config
        items = self.coerce_news(news)
        cii_scores = cii_scores or {}
        # The full per-country table when present; the top-N slice otherwise.
        rows = summary.get("countries") or summary.get("top_countries") or []
        by_country: dict[str, Mapping[str, Any]] = {
            str(row.get("code")): row for row in rows if isinstance(row, Mapping)
        }

        points: list[FocalPoint] = []
        for mention in self._mentions(items).values():
            row = by_country.get(mention.country or "") or {}
            signal_count = int(row.get("count") or 0)
            if not mention.headlines or signal_count <= 0:
                continue
            types = sorted(str(t) for t in row.get("signal_types") or [])
            cii = float(cii_scores.get(mention.country or "", 0.0) or 0.0)
            score = round(
                len(mention.headlines) * cfg.news_weight
                + signal_count * cfg.signal_weight
                + len(types) * cfg.type_weight
                + (cii / cfg.cii_divisor if cfg.cii_divisor > 0 else 0.0),
                1,
            )
            recent = sorted(
                mention.headlines,
                key=lambda n: n.published_at.timestamp() if n.published_at else 0.0,
                reverse=True,
            )[:3]
            narrative = (
                f"{mention.display_name}: {len(mention.headlines)} headline(s) alongside "
                f"{signal_count} signal(s) ({', '.join(types)})"
            )
            if cii:
                narrative += f"; CII {cii:.0f}"
            points.append(
                FocalPoint(
                    entity_id=mention.entity_id,
                    display_name=mention.display_name,
                    entity_type=mention.entity_type,
                    news_mentions=len(mention.headlines),
                    signal_count=signal_count,
                    signal_types=types,
                    urgency=self._urgency(len(types), score),
                    focal_score=score,
                    top_headlines=[{"title": n.title, "url": n.url, "source": n.source} for n in recent],
                    narrative=narrative,
                    country=mention.country,
                )
            )

        points.sort(key=lambda p: (-p.focal_score, p.entity_id))
        points = points[: max(0, cfg.max_points)]
        self._focal_points = points
        self._ai_context = self._build_ai_context(points)
        self._computed_at = now or utcnow()
        return list(points)

    @staticmethod
    def _build_ai_context(points: list[FocalPoint]) -> str:
        if not points:
            return "[FOCAL POINTS] None correlated."
        lines = [
            f"{p.display_name} [{p.urgency}] {p.news_mentions} news / {p.signal_count} signals"
            for p in points
        ]
        return "[FOCAL POINTS] " + "; ".join(lines)

    def get_focal_points(self) -> list[FocalPoint]:
        return list(self._focal_points)

    @property
    def ai_context(self) -> str:
        return self._ai_context

    def get_summary(self) -> dict[str, Any]:
        return {
            "focal_points": [p.to_dict() for p in self._focal_points],
            "ai_context": self._ai_context,
            "computed_at": to_iso(self._computed_at),
        }
