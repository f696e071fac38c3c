import logging
from typing import Protocol, runtime_checkable

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from task_api.core.config import Settings
from task_api.core.errors import CacheUnavailableError

logger = logging.getLogger(__name__)


@runtime_checkable
class CacheStore(Protocol):
    """Key-value operations the cache service needs from a backend.

    Connectivity failures raise ``CacheUnavailableError``. Every other backend
    error is reported through the return value (``None`` or ``False``) and
    never raised.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, *keys: str) -> int | None: ...

    async def exists(self, key: str) -> bool: ...

    async def scan(
        self, cursor: int, match: str, count: int
    ) -> tuple[int, list[str]] | None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def _short(key: str) -> str:
    return key[:50]


class RedisCacheStore:
    """CacheStore over a shared ``redis.asyncio`` client."""

    def __init__(self, redis: Redis):
        self.redis = redis

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCacheStore":
        redis = Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connect_timeout,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis)

    def _unavailable(self, operation: str, error: RedisConnectionError):
        logger.error(f"Redis {operation} failed, backend unreachable: {error}")
        return CacheUnavailableError(f"Cache backend unavailable during {operation}")

    async def get(self, key: str) -> str | None:
        try:
            return await self.redis.get(key)
        except RedisConnectionError as e:
            raise self._unavailable("GET", e) from e
        except RedisError as e:
            logger.warning(f"Redis GET error for {_short(key)}: {e}")
            return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            await self.redis.set(key, value, ex=ttl_seconds)
            return True
        except RedisConnectionError as e:
            raise self._unavailable("SET", e) from e
        except RedisError as e:
            logger.warning(f"Redis SET error for {_short(key)}: {e}")
            return False

    async def delete(self, *keys: str) -> int | None:
        if not keys:
            return 0
        try:
            return int(await self.redis.delete(*keys))
        except RedisConnectionError as e:
            raise self._unavailable("DEL", e) from e
        except RedisError as e:
            logger.warning(f"Redis DEL error for {len(keys)} key(s): {e}")
            return None

    async def exists(self, key: str) -> bool:
        try:
            return await self.redis.exists(key) > 0
        except RedisConnectionError as e:
            raise self._unavailable("EXISTS", e) from e
        except RedisError as e:
            logger.warning(f"Redis EXISTS error for {_short(key)}: {e}")
            return False

    async def scan(
        self, cursor: int, match: str, count: int
    ) -> tuple[int, list[str]] | None:
        try:
            next_cursor, keys = await self.redis.scan(cursor, match=match, count=count)
            return int(next_cursor), list(keys)
        except RedisConnectionError as e:
            raise self._unavailable("SCAN", e) from e
        except RedisError as e:
            logger.warning(f"Redis SCAN error for {match}: {e}")
            return None

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisConnectionError as e:
            raise self._unavailable("PING", e) from e
        except RedisError as e:
            logger.warning(f"Redis PING error: {e}")
            return False

    async def close(self) -> None:
        try:
            await self.redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis: {e}")
