"""
Database setup.

One async engine per process, built from ``settings.DATABASE_URL``. SQLite
(aiosqlite) is the default; PostgreSQL (asyncpg) additionally gets a sized
connection pool and native tag containment in segment queries.

SQL echo is off outside development and the connection string is never logged.
"""

import logging
import time

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from app.config import settings

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = settings.SLOW_QUERY_THRESHOLD_MS


def _engine_options(database_url: str) -> dict:
    """Pool sizing only applies to server databases; SQLite manages its own pool."""
    options = {
        "echo": settings.sqlalchemy_echo,
        "future": True,
    }
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(
            pool_size=20,
            max_overflow=10,
            pool_recycle=3600,
            pool_pre_ping=True,
        )
    return options


# Create async engine
engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))


# Slow query logging
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info["query_start_time"] = time.monotonic()


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    start = conn.info.get("query_start_time")
    if start is None:
        return
    duration_ms = (time.monotonic() - start) * 1000
    if duration_ms >= SLOW_QUERY_THRESHOLD_MS:
        param_count = len(parameters) if parameters else 0
        truncated = statement[:200] + ("..." if len(statement) > 200 else "")
        logger.warning(
            "Slow query (%.0fms, %d params): %s", duration_ms, param_count, truncated
        )


def install_slow_query_logging(target_engine) -> None:
    """Attach slow query timing to an async engine."""
    event.listen(target_engine.sync_engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(target_engine.sync_engine, "after_cursor_execute", _after_cursor_execute)


install_slow_query_logging(engine)
logger.info("Slow query logging enabled (threshold: %dms)", SLOW_QUERY_THRESHOLD_MS)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


async def get_db() -> AsyncSession:
    """Dependency to get database session.

    Note: Callers are responsible for calling commit() when needed.
    This dependency only provides the session and handles cleanup.
    """
    session = async_session_maker()
    try:
        yield session
    finally:
        await session.close()


async def init_db():
    """Initialize database tables."""
    # Import models so they register with the metadata before create_all
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
