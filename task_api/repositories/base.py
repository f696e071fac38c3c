import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

from cachetools import TTLCache
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from task_api.cache.service import CacheService, TTLTier
from task_api.database import DataAccessor

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class BaseRepository:
    """
    Common plumbing for entity repositories.

    Both collaborators are required constructor arguments; a repository never
    looks up a global connection or cache.
    """

    table_name: str = ""

    def __init__(self, db: DataAccessor, cache: CacheService):
        if db is None or cache is None:
            raise ValueError(f"{type(self).__name__} needs a DataAccessor and a CacheService")
        self.db = db
        self.cache = cache

        # Per-key locks collapse concurrent misses for the same key into one
        # store read. Bounded and self-expiring; 300s exceeds any query time.
        self._locks: TTLCache = TTLCache(maxsize=10_000, ttl=300)

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    async def _read_through(
        self,
        key: str,
        model: type[M],
        loader: Callable[[], Awaitable[M | None]],
        tier: TTLTier,
    ) -> M | None:
        """
        Cache-aside read.

        Returns the cached snapshot with ``from_cache=True`` on a hit. On a miss
        the loader queries the store and the result is cached as a complete
        snapshot before being returned with ``from_cache=False``. A loader
        returning None is not cached.
        """
        hit = await self._cached(key, model)
        if hit is not None:
            return hit

        lock = self._lock_for(key)
        waited = lock.locked()
        async with lock:
            if waited:
                # the holder has probably populated it by now
                hit = await self._cached(key, model)
                if hit is not None:
                    return hit

            value = await loader()
            if value is None:
                return None
            await self.cache.write(key, value.model_dump(mode="json"), tier)
            value.from_cache = False
            return value

    async def _cached(self, key: str, model: type[M]) -> M | None:
        payload = await self.cache.read(key)
        if payload is None:
            return None
        try:
            value = model.model_validate(payload)
        except ValueError as e:
            # snapshot from an older schema; treat as a miss
            logger.warning(f"Ignoring malformed cached {model.__name__}: {e}")
            return None
        value.from_cache = True
        return value

    @staticmethod
    def utc_now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def build_set_clause(
        data: Mapping[str, Any], allowed: tuple[str, ...]
    ) -> tuple[str, dict[str, Any]]:
        """``SET`` fragment for the allowed columns present in ``data``."""
        assignments = []
        params = {}
        for column in allowed:
            if column in data:
                assignments.append(f"{column} = :{column}")
                params[column] = data[column]
        return ", ".join(assignments), params

    async def health_check(self) -> dict:
        try:
            result = await self.db.execute("SELECT 1 AS health_check")
        except SQLAlchemyError as e:
            return {
                "repository": type(self).__name__,
                "table": self.table_name,
                "status": "unhealthy",
                "error": str(e),
            }
        return {
            "repository": type(self).__name__,
            "table": self.table_name,
            "status": "healthy",
            "connection_test": result.row_count > 0,
        }
