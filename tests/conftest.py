"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Redis and subscriber endpoints are mocked.
"""
import pytest
import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from lendflow.database import Base
import lendflow.models  # noqa: F401  (registers every table on Base.metadata)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# Hex letters in the fixtures so tenant ids never look like integers to SQLite
TENANT_A = uuid.UUID("a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d")
TENANT_B = uuid.UUID("b2c3d4e5-f6a7-4b8c-9d0e-1f2a3b4c5d6e")


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@asynccontextmanager
async def _session_factory_from(db: AsyncSession):
    """Yield the test db session as if it were from async_session_factory."""
    yield db


@pytest.fixture
def session_factory(db):
    """Callable standing in for async_session_factory, bound to the test db."""
    return lambda: _session_factory_from(db)


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("lendflow.utils.redis_client.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.eval = AsyncMock(return_value=1)
        redis_mock.lpush = AsyncMock(return_value=1)
        redis_mock.brpop = AsyncMock(return_value=None)
        redis_mock.rpop = AsyncMock(return_value=None)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def tenant_id():
    return TENANT_A


@pytest.fixture
def other_tenant_id():
    return TENANT_B
