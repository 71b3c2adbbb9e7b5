"""Geo Intelligence Correlation & Risk Engine.

Correlates independently polled geospatial signal streams into
convergence zones, country instability scores, theater posture and a
ranked strategic alert feed.
"""

from .errors import (
    GeoIntelError,
    UpstreamTimeout,
    UpstreamError,
    MalformedRecord,
    CacheUnavailable,
    InsufficientData,
)
from .signal_aggregator import SignalAggregator, Signal, SignalType
from .convergence_detector import ConvergenceDetector, ConvergenceZone
from .instability_scorer import InstabilityScorer, CountryScore, ComponentScores
from .theater_posture import TheaterPostureEngine, TheaterPostureSummary, MilitaryAsset
from .focal_point_detector import FocalPointDetector, FocalPoint, NewsItem
from .risk_aggregator import RiskAggregator, StrategicRiskOverview, UnifiedAlert
from .freshness import DataFreshnessTracker, SourceFreshness
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .cache import TieredCache, CacheResult
from .stores import InMemorySharedCache, InMemoryDurableStore, SqlSharedCache, SqlDurableStore
from .engine import GeoIntelEngine

__all__ = [
    "GeoIntelError", "UpstreamTimeout", "UpstreamError", "MalformedRecord", "CacheUnavailable", "InsufficientData",
    "SignalAggregator", "Signal", "SignalType",
    "ConvergenceDetector", "ConvergenceZone",
    "InstabilityScorer", "CountryScore", "ComponentScores",
    "TheaterPostureEngine", "TheaterPostureSummary", "MilitaryAsset",
    "FocalPointDetector", "FocalPoint", "NewsItem",
    "RiskAggregator", "StrategicRiskOverview", "UnifiedAlert",
    "DataFreshnessTracker", "SourceFreshness",
    "CircuitBreaker", "CircuitBreakerRegistry",
    "TieredCache", "CacheResult",
    "InMemorySharedCache", "InMemoryDurableStore", "SqlSharedCache", "SqlDurableStore",
    "GeoIntelEngine",
]
