from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "geo_intel.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"


class Settings(BaseSettings):
    # Database - durable store and shared cache tables live here
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None
    CORS_ORIGINS: list[str] = ["*"]

    # Signal buffer
    GEO_INTEL_ENABLED: bool = True
    GEO_INTEL_SIGNAL_RETENTION_HOURS: float = 24.0  # Signals older than this are evicted
    GEO_INTEL_SIGNAL_CAPACITY_PER_TYPE: int = 2000  # Oldest evicted first past this
    GEO_INTEL_SIGNAL_MAX_FUTURE_SKEW_SECONDS: float = 300.0
    GEO_INTEL_SUMMARY_TOP_COUNTRIES: int = 8

    # Convergence detection
    GEO_INTEL_CONVERGENCE_RADIUS_KM: float = 250.0
    GEO_INTEL_CONVERGENCE_WINDOW_HOURS: float = 24.0
    GEO_INTEL_CONVERGENCE_MIN_TYPES: int = 2  # Min distinct signal types per zone
    GEO_INTEL_CONVERGENCE_MIN_SIGNALS: int = 3  # Min total signals per zone

    # Country instability index
    GEO_INTEL_CII_LEARNING_MINUTES: float = 15.0
    GEO_INTEL_CII_HALF_LIFE_HOURS: float = 6.0
    GEO_INTEL_CII_TICK_SECONDS: int = 300  # Periodic decay/recompute
    GEO_INTEL_CII_TREND_THRESHOLD: float = 5.0
    GEO_INTEL_CII_HISTORY_DAYS: int = 7
    GEO_INTEL_CII_SECURITY_RADIUS_KM: float = 500.0

    # Theater posture
    GEO_INTEL_POSTURE_REFRESH_SECONDS: int = 300
    GEO_INTEL_POSTURE_TREND_WINDOW: int = 3
    GEO_INTEL_POSTURE_VESSEL_CACHE_MAX_AGE_SECONDS: float = 1800.0  # 30 minutes
    GEO_INTEL_POSTURE_VESSEL_RETRY_SECONDS: list[float] = [30.0, 60.0, 90.0, 120.0]

    # Focal points
    GEO_INTEL_FOCAL_MAX_POINTS: int = 10

    # Strategic risk
    GEO_INTEL_RISK_REFRESH_SECONDS: int = 300
    GEO_INTEL_ALERT_RETENTION_HOURS: float = 24.0
    GEO_INTEL_ALERT_MAX_ITEMS: int = 500

    # Freshness
    GEO_INTEL_FRESH_MINUTES: float = 15.0
    GEO_INTEL_STALE_MINUTES: float = 120.0

    # Upstream fault isolation
    GEO_INTEL_UPSTREAM_TIMEOUT_SECONDS: float = 10.0
    GEO_INTEL_CB_MAX_FAILURES: int = 3
    GEO_INTEL_CB_COOLDOWN_SECONDS: float = 300.0
    GEO_INTEL_SIGNAL_POLL_SECONDS: int = 60

    # Tiered cache
    GEO_INTEL_MEMORY_CACHE_TTL_SECONDS: float = 60.0
    GEO_INTEL_SHARED_CACHE_TTL_SECONDS: int = 600
    GEO_INTEL_NOTIFY_DEBOUNCE_SECONDS: float = 0.5

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _split_cors_origins(cls, value: object) -> object:
        """Accept a comma-separated env var as well as a JSON list."""
        if isinstance(value, str) and not value.strip().startswith("["):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("GEO_INTEL_POSTURE_VESSEL_RETRY_SECONDS", mode="before")
    @classmethod
    def _normalize_retry_schedule(cls, value: object) -> object:
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return sorted(max(0.0, float(v)) for v in value)
        return value

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            return f"{prefix}{absolute}"

        return text

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
