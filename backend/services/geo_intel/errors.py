"""Exception hierarchy for the geo-intelligence engine.

Upstream and cache failures are recorded and absorbed inside the engine;
callers see a status field on the returned data rather than an exception.
"""

from __future__ import annotations

from typing import Optional


class GeoIntelError(Exception):
    """Base class for geo-intelligence failures."""


class UpstreamTimeout(GeoIntelError):
    def __init__(self, source: str, timeout_seconds: float) -> None:
        super().__init__(f"{source} timed out after {timeout_seconds:.1f}s")
        self.source = source
        self.timeout_seconds = timeout_seconds


class UpstreamError(GeoIntelError):
    def __init__(self, source: str, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.cause = cause


class MalformedRecord(GeoIntelError):
    """A single upstream record failed validation and is dropped."""


class CacheUnavailable(GeoIntelError):
    """A cache tier or durable store could not be read or written."""


class InsufficientData(GeoIntelError):
    """No active sources; derived scores would be meaningless."""
