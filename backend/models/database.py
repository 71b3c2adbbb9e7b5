from sqlalchemy import (
    Column,
    String,
    DateTime,
    JSON,
    Index,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from datetime import datetime
from pathlib import Path
import logging

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== GEO INTEL CACHE TIERS ====================


class GeoCacheEntry(Base):
    """Shared cache tier: cross-process values with a hard expiry."""

    __tablename__ = "geo_cache_entries"

    key = Column(String, primary_key=True)
    payload = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("idx_geo_cache_expires", "expires_at"),)


class GeoDurableSnapshot(Base):
    """Durable tier: last-known-good snapshot per key, never expires."""

    __tablename__ = "geo_durable_snapshots"

    key = Column(String, primary_key=True)
    payload = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ==================== DATABASE SETUP ====================


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    engine_kw: dict = {"echo": False}
    if url.startswith("sqlite") and ":memory:" in url:
        engine_kw["connect_args"] = {"check_same_thread": False}
        engine_kw["poolclass"] = StaticPool
    elif "sqlite" in url:
        engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked
        path = url.split(":///", 1)[-1]
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(url, **engine_kw)
    if "sqlite" in url and ":memory:" not in url:
        # Apply pragmas on each new SQLite connection
        event.listens_for(engine.sync_engine, "connect")(_set_sqlite_pragma)
    return engine


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async_engine = build_engine(settings.DATABASE_URL)
AsyncSessionLocal = build_session_factory(async_engine)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_database():
    """Create the cache tables if they do not exist yet."""
    await create_tables(async_engine)
    logger.info("Geo-intel cache tables ready (%s)", async_engine.url.render_as_string(hide_password=True))

