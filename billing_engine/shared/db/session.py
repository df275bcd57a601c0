import time
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from billing_engine.shared.core.config import Settings
from billing_engine.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer
# without importing the application module.
import billing_engine.models  # noqa: F401, E402

SLOW_QUERY_THRESHOLD_SECONDS = 0.2
_IN_MEMORY_SQLITE_URL = "sqlite+aiosqlite:///:memory:"


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def resolve_effective_url(settings: Settings) -> str:
    db_url = _normalize_db_url(settings.DATABASE_URL)
    if settings.TESTING and not db_url:
        return _IN_MEMORY_SQLITE_URL
    if settings.TESTING and "sqlite" not in db_url:
        # Safety: protect tests from accidental writes to real databases.
        logger.warning("testing_database_url_overridden", requested=db_url.split("@")[-1])
        return _IN_MEMORY_SQLITE_URL
    if not db_url:
        raise ConfigurationError("DATABASE_URL is not set. The application cannot start.")
    return db_url


def _build_pool_config(settings: Settings, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {"echo": settings.DB_ECHO}
    if effective_url == _IN_MEMORY_SQLITE_URL:
        # A single shared connection keeps the in-memory schema alive.
        pool_config["poolclass"] = StaticPool
    elif "sqlite" not in effective_url:
        pool_config.update(
            {
                "pool_pre_ping": True,
                "pool_size": settings.DB_POOL_SIZE,
                "max_overflow": settings.DB_MAX_OVERFLOW,
            }
        )
    return pool_config


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured store."""
    effective_url = resolve_effective_url(settings)
    engine = create_async_engine(effective_url, **_build_pool_config(settings, effective_url))
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    logger.info("database_engine_created", backend=engine.dialect.name)
    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=SLOW_QUERY_THRESHOLD_SECONDS,
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
            parameters=str(parameters)[:100] if parameters else None,
        )

