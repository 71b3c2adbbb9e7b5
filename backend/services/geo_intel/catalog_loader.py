"""Shared JSON catalog loader for geo-intelligence data files."""

from __future__ import annotations

import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

_DATA_ROOT = Path(__file__).resolve().parents[2] / "data" / "geo_intel"


class GeoIntelJsonCatalog:
    """Loads a geo-intel JSON file with mtime-aware caching.

    Keys missing from the file fall back to the embedded defaults, so a
    partial file only overrides what it names.
    """

    def __init__(
        self,
        filename: str,
        default_payload: dict[str, Any],
        data_root: Optional[Path] = None,
    ) -> None:
        self._path = (data_root or _DATA_ROOT) / filename
        self._default = deepcopy(default_payload)
        self._payload: dict[str, Any] = deepcopy(default_payload)
        self._loaded = False
        self._mtime_ns: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _reload_if_needed(self) -> None:
        if not self._path.exists():
            if not self._loaded:
                logger.warning("Geo-intel catalog missing, using defaults: %s", self._path)
                self._payload = deepcopy(self._default)
                self._loaded = True
            return

        try:
            mtime_ns = int(self._path.stat().st_mtime_ns)
        except OSError as exc:
            logger.warning("Failed to stat catalog %s: %s", self._path, exc)
            if not self._loaded:
                self._payload = deepcopy(self._default)
                self._loaded = True
            return

        if self._loaded and self._mtime_ns == mtime_ns:
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("catalog root must be an object")
            merged = deepcopy(self._default)
            merged.update(raw)
            self._payload = merged
        except (OSError, ValueError) as exc:
            logger.error("Failed loading geo-intel catalog %s: %s", self._path, exc)
            self._payload = deepcopy(self._default)
        self._mtime_ns = mtime_ns
        self._loaded = True

    def revision(self) -> int | None:
        """Return the loaded file's mtime so callers can cache parsed views."""
        self._reload_if_needed()
        return self._mtime_ns

    def payload(self) -> dict[str, Any]:
        self._reload_if_needed()
        return deepcopy(self._payload)

    def section(self, name: str) -> dict[str, Any]:
        value = self.payload().get(name)
        return value if isinstance(value, dict) else {}
