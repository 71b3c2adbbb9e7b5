"""Per-source data freshness tracking.

Every upstream reports success or failure here.  The risk aggregator uses
the summary to decide whether its composite is trustworthy, and the health
endpoint surfaces the per-source table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from config import settings
from utils.clock import Clock, system_clock, to_iso

logger = logging.getLogger(__name__)

FRESH = "fresh"
STALE = "stale"
VERY_STALE = "very_stale"
NO_DATA = "no_data"
ERROR = "error"
DISABLED = "disabled"

_ACTIVE_STATUSES = {FRESH, STALE}


@dataclass
class SourceFreshness:
    source_id: str
    name: str
    status: str = NO_DATA
    last_updated: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    item_count: int = 0
    enabled: bool = True
    required_for_risk: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "name": self.name,
            "status": self.status,
            "last_updated": to_iso(self.last_updated),
            "last_error": self.last_error,
            "last_error_at": to_iso(self.last_error_at),
            "item_count": self.item_count,
            "enabled": self.enabled,
            "required_for_risk": self.required_for_risk,
        }


class DataFreshnessTracker:
    def __init__(
        self,
        clock: Optional[Clock] = None,
        fresh_minutes: Optional[float] = None,
        stale_minutes: Optional[float] = None,
    ) -> None:
        self._clock = clock or system_clock
        self._fresh = timedelta(minutes=fresh_minutes if fresh_minutes is not None else settings.GEO_INTEL_FRESH_MINUTES)
        self._stale = timedelta(minutes=stale_minutes if stale_minutes is not None else settings.GEO_INTEL_STALE_MINUTES)
        self._sources: dict[str, SourceFreshness] = {}
        self._subscribers: list[Callable[[str], None]] = []

    # -- Registration --------------------------------------------------------

    def register(self, source_id: str, name: Optional[str] = None, required_for_risk: bool = False) -> SourceFreshness:
        entry = self._sources.get(source_id)
        if entry is None:
            entry = SourceFreshness(source_id=source_id, name=name or source_id)
            self._sources[source_id] = entry
        if name:
            entry.name = name
        entry.required_for_risk = entry.required_for_risk or required_for_risk
        return entry

    def set_enabled(self, source_id: str, enabled: bool) -> None:
        entry = self.register(source_id)
        if entry.enabled == enabled:
            return
        entry.enabled = enabled
        self._notify(source_id)

    # -- Updates -------------------------------------------------------------

    def record_update(self, source_id: str, count: int = 0) -> None:
        entry = self.register(source_id)
        entry.last_updated = self._clock.now()
        entry.item_count = max(0, int(count))
        entry.last_error = None
        self._notify(source_id)

    def record_error(self, source_id: str, error: object) -> None:
        entry = self.register(source_id)
        entry.last_error = str(error) or type(error).__name__
        entry.last_error_at = self._clock.now()
        logger.debug("Source %s reported error: %s", source_id, entry.last_error)
        self._notify(source_id)

    # -- Classification ------------------------------------------------------

    def _classify(self, entry: SourceFreshness, now: datetime) -> str:
        if not entry.enabled:
            return DISABLED
        if entry.last_updated is None:
            return ERROR if entry.last_error else NO_DATA
        age = now - entry.last_updated
        if age < self._fresh:
            return FRESH
        if entry.last_error:
            return ERROR
        if age < self._stale:
            return STALE
        return VERY_STALE

    def get_source(self, source_id: str) -> Optional[SourceFreshness]:
        entry = self._sources.get(source_id)
        if entry is not None:
            entry.status = self._classify(entry, self._clock.now())
        return entry

    def get_all(self) -> list[SourceFreshness]:
        now = self._clock.now()
        for entry in self._sources.values():
            entry.status = self._classify(entry, now)
        return sorted(self._sources.values(), key=lambda e: e.source_id)

    def is_active(self, source_id: str) -> bool:
        entry = self.get_source(source_id)
        return entry is not None and entry.status in _ACTIVE_STATUSES

    def get_summary(self) -> dict[str, Any]:
        entries = self.get_all()
        active = [e for e in entries if e.status in _ACTIVE_STATUSES]
        required = [e for e in entries if e.required_for_risk and e.enabled]
        updates = [e.last_updated for e in entries if e.last_updated is not None]

        if not active:
            overall = "insufficient"
        elif len(active) < len([e for e in entries if e.enabled]):
            overall = "limited"
        else:
            overall = "sufficient"

        return {
            "active_sources": len(active),
            "stale_sources": len([e for e in entries if e.status in (STALE, VERY_STALE)]),
            "disabled_sources": len([e for e in entries if e.status == DISABLED]),
            "error_sources": len([e for e in entries if e.status == ERROR]),
            "total_sources": len(entries),
            "overall_status": overall,
            "core_sources_ready": all(e.status in _ACTIVE_STATUSES for e in required),
            "missing_required": [e.source_id for e in required if e.status not in _ACTIVE_STATUSES],
            "oldest_update": to_iso(min(updates)) if updates else None,
            "newest_update": to_iso(max(updates)) if updates else None,
            "sources": [e.to_dict() for e in entries],
        }

    # -- Subscriptions -------------------------------------------------------

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, source_id: str) -> None:
        for callback in list(self._subscribers):
            try:
                callback(source_id)
            except Exception:
                logger.exception("Freshness subscriber failed for %s", source_id)
