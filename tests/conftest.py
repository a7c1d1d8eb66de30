"""Shared test fixtures."""
import os
from collections.abc import AsyncGenerator

# Settings require a database URL; tests never touch the application engine.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from api.dependencies import get_async_session, get_remote_store, get_settings
from api.main import app
from core.config import Settings
from core.redis import RedisClient, set_redis_client
from fakes import FakeRemoteStore
from models import Base
from schemas.session_user import SessionUser
from services.cross_tab import LocalCrossTabNotifier
from services.remote_store import SqlRemoteStore

TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
def alice() -> SessionUser:
    """Signed-in user for synchronizer tests."""
    return SessionUser(id="alice", email="alice@example.com")


@pytest.fixture
def fake_store() -> FakeRemoteStore:
    """In-memory remote store with controllable timing."""
    return FakeRemoteStore()


@pytest.fixture
def local_notifier() -> LocalCrossTabNotifier:
    """In-process cross-tab channel."""
    return LocalCrossTabNotifier()


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine with the bookmark table created."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def fake_redis() -> AsyncGenerator[fakeredis.aioredis.FakeRedis]:
    """Isolated fake Redis server."""
    server = fakeredis.FakeServer()
    client = fakeredis.aioredis.FakeRedis(server=server)
    yield client
    await client.aclose()


@pytest.fixture
def redis_client(fake_redis: fakeredis.aioredis.FakeRedis) -> RedisClient:
    """RedisClient wrapper around the fake server."""
    return RedisClient.from_redis(fake_redis)


@pytest.fixture
def sql_store(
    session_factory: async_sessionmaker[AsyncSession], redis_client: RedisClient,
) -> SqlRemoteStore:
    """SQL-backed store publishing to the fake Redis."""
    return SqlRemoteStore(session_factory, redis_client=redis_client)


@pytest.fixture
def settings() -> Settings:
    """Settings for API tests: dev mode on, OAuth broker configured."""
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        dev_mode=True,
        oauth_broker_url="https://auth.example.com/auth/v1",
    )


@pytest.fixture
async def client(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    sql_store: SqlRemoteStore,
    redis_client: RedisClient,
) -> AsyncGenerator[AsyncClient]:
    """HTTP client against the app with test database, Redis and settings."""

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_remote_store] = lambda: sql_store
    set_redis_client(redis_client)

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    set_redis_client(None)
