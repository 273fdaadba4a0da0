import pytest
import pytest_asyncio
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401
from app.core.clock import FixedClock
from app.database import Base
from app.models.customer import Customer
from app.services.segmentation.evaluator import PredicateEvaluator
from app.services.segmentation.resolver import AudienceResolver
from app.services.segmentation.store import SqlCustomerStore

# Instant all time-relative rules are evaluated against
NOW = datetime(2026, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def test_db(tmp_path):
    """Create a per-test SQLite database and tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def evaluator(clock):
    return PredicateEvaluator(clock)


@pytest.fixture
def sql_resolver(test_db: AsyncSession, evaluator):
    """Resolver over the test database."""
    return AudienceResolver(SqlCustomerStore(test_db, timeout=10), evaluator, max_fallback_rows=1000)


@pytest_asyncio.fixture
async def add_customers(test_db: AsyncSession):
    """Persist customer payload dicts (e.g. from CustomerFactory) and return the rows."""

    async def _add(payloads):
        rows = [Customer(**payload) for payload in payloads]
        test_db.add_all(rows)
        await test_db.commit()
        return rows

    return _add
