"""
Shared fixtures: in-memory SQLite through the async engine and a fake Redis
server, so the whole data-access stack runs without external services.
"""

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from task_api.cache.service import RedisCacheService
from task_api.cache.store import RedisCacheStore
from task_api.context import AppContext
from task_api.core.config import Settings
from task_api.database import DataAccessor, create_db_and_tables

NAMESPACE = "test:"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        cache_namespace=NAMESPACE,
        cache_scan_batch_size=10,
    )


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(engine) -> DataAccessor:
    return DataAccessor(engine)


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def store(redis) -> RedisCacheStore:
    return RedisCacheStore(redis)


@pytest.fixture
def cache(store, settings) -> RedisCacheService:
    return RedisCacheService.from_settings(settings, store=store)


@pytest.fixture
def down_redis() -> AsyncMock:
    """A Redis client whose server refuses every connection."""
    client = AsyncMock()
    refused = RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
    for command in ("get", "set", "delete", "exists", "scan", "ping"):
        getattr(client, command).side_effect = refused
    return client


@pytest.fixture
def down_cache(down_redis, settings) -> RedisCacheService:
    return RedisCacheService.from_settings(settings, store=RedisCacheStore(down_redis))


@pytest.fixture
def ctx(settings, db, cache) -> AppContext:
    return AppContext.create(settings, db, cache)


@pytest.fixture
async def user_id(ctx) -> int:
    user = await ctx.users.create({"email": "ada@example.com", "name": "Ada"})
    return user.id


@pytest.fixture
async def other_user_id(ctx) -> int:
    user = await ctx.users.create({"email": "grace@example.com", "name": "Grace"})
    return user.id
