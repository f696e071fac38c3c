import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from task_api.cache.store import CacheStore, RedisCacheStore
from task_api.core.config import NAMESPACE_PATTERN, Settings
from task_api.core.errors import CacheUnavailableError

logger = logging.getLogger(__name__)

WILDCARD = "*"
DEFERRED_LIMIT = 1000


class TTLTier(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


@dataclass
class InvalidationResult:
    deleted_count: int
    pattern: str
    success: bool
    error: str | None = None


@dataclass
class MultiInvalidationResult:
    patterns: list[str]
    results: list[InvalidationResult] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return sum(r.deleted_count for r in self.results)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)


class CacheService(Protocol):
    """Entity caching as seen by the repositories.

    Implementations never raise for cache problems: reads degrade to a miss,
    writes and invalidations report failure through their return value.
    """

    def is_healthy(self) -> bool: ...

    async def connect(self) -> bool: ...

    async def read(self, key: str) -> Any | None: ...

    async def write(self, key: str, value: Any, tier: TTLTier = TTLTier.MEDIUM) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def invalidate(self, key: str) -> bool: ...

    async def invalidate_pattern(self, pattern: str) -> InvalidationResult: ...

    async def invalidate_multiple(
        self, patterns: Iterable[str] | str
    ) -> MultiInvalidationResult: ...

    def get_stats(self) -> dict: ...

    async def close(self) -> None: ...


class RedisCacheService:
    """
    Cache-aside service over a CacheStore.

    Features:
    - TTL tiers (short / medium / long) resolved from configuration
    - Key namespacing with a configurable prefix
    - Pattern invalidation with SCAN + batched DEL
    - Availability tracking: after a connectivity failure, every operation
      short-circuits to miss/no-op until ``recheck_seconds`` have passed, then
      a single call is let through as a probe. Any successful call restores
      health. Invalidations skipped meanwhile are remembered and replayed
      once the backend is reachable again.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        namespace: str = "",
        ttl: Mapping[TTLTier, int] | None = None,
        scan_batch_size: int = 100,
        recheck_seconds: float = 30.0,
        required: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not NAMESPACE_PATTERN.match(namespace):
            raise ValueError(f"Invalid cache namespace: {namespace!r}")
        self.store = store
        self.namespace = namespace
        self.ttl = dict(ttl or {TTLTier.SHORT: 300, TTLTier.MEDIUM: 1800, TTLTier.LONG: 7200})
        self.scan_batch_size = scan_batch_size
        self.recheck_seconds = recheck_seconds
        self.required = required
        self._clock = clock
        self._healthy = True
        self._unhealthy_since = 0.0
        self._deferred: set[tuple[str, str]] = set()
        self._replaying = False

        self.stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
            "invalidated": 0,
            "errors": 0,
            "skipped": 0,
        }

    @classmethod
    def from_settings(
        cls, settings: Settings, store: CacheStore | None = None
    ) -> "RedisCacheService":
        return cls(
            store or RedisCacheStore.from_settings(settings),
            namespace=settings.cache_namespace,
            ttl={
                TTLTier.SHORT: settings.cache_ttl_short,
                TTLTier.MEDIUM: settings.cache_ttl_medium,
                TTLTier.LONG: settings.cache_ttl_long,
            },
            scan_batch_size=settings.cache_scan_batch_size,
            recheck_seconds=settings.cache_recheck_seconds,
            required=settings.cache_required,
        )

    def _key(self, key: str) -> str:
        """Build namespaced cache key."""
        return f"{self.namespace}{key}"

    def ttl_for(self, tier: TTLTier) -> int:
        return self.ttl[TTLTier(tier)]

    def is_healthy(self) -> bool:
        return self._healthy

    def _should_attempt(self) -> bool:
        if self._healthy:
            return True
        now = self._clock()
        if now - self._unhealthy_since >= self.recheck_seconds:
            # let one probe through, then wait another interval
            self._unhealthy_since = now
            return True
        self.stats["skipped"] += 1
        return False

    def _mark_unavailable(self, operation: str, error: CacheUnavailableError):
        if self._healthy:
            logger.warning(f"Cache marked unavailable after {operation}: {error}")
        self._healthy = False
        self._unhealthy_since = self._clock()
        self.stats["errors"] += 1

    async def _mark_available(self):
        if self._healthy:
            return
        logger.info("Cache backend reachable again")
        self._healthy = True
        await self._replay_deferred()

    def _defer(self, kind: str, target: str):
        if ("pattern", WILDCARD) in self._deferred:
            return
        if len(self._deferred) >= DEFERRED_LIMIT:
            # too much to track; sweep the whole namespace on recovery
            logger.warning("Deferred invalidations overflowed, namespace will be flushed")
            self._deferred = {("pattern", WILDCARD)}
            return
        self._deferred.add((kind, target))

    async def _replay_deferred(self):
        deferred, self._deferred = self._deferred, set()
        if not deferred:
            return
        logger.info(f"Replaying {len(deferred)} deferred invalidation(s)")
        self._replaying = True
        try:
            for kind, target in sorted(deferred):
                # a renewed outage re-defers whatever is left
                if kind == "key":
                    await self.invalidate(target)
                else:
                    await self.invalidate_pattern(target)
        finally:
            self._replaying = False

    async def connect(self) -> bool:
        """Verify the backend at startup."""
        try:
            ok = await self.store.ping()
        except CacheUnavailableError as e:
            self._mark_unavailable("PING", e)
            if self.required:
                raise
            logger.error("Cache backend unreachable, running without cache")
            return False
        if ok:
            await self._mark_available()
            logger.info("Redis connection established")
        return ok

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        return json.loads(raw)

    async def read(self, key: str) -> Any | None:
        if not self._should_attempt():
            self.stats["misses"] += 1
            return None

        # read before deferred invalidations are replayed; may be outdated
        pending = bool(self._deferred)
        try:
            raw = await self.store.get(self._key(key))
        except CacheUnavailableError as e:
            self._mark_unavailable("GET", e)
            self.stats["misses"] += 1
            return None
        await self._mark_available()

        if raw is None or pending or self._replaying:
            self.stats["misses"] += 1
            logger.debug(f"Cache miss: {key}")
            return None

        try:
            value = self._deserialize(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            self.stats["errors"] += 1
            self.stats["misses"] += 1
            return None

        self.stats["hits"] += 1
        logger.debug(f"Cache hit: {key}")
        return value

    async def write(self, key: str, value: Any, tier: TTLTier = TTLTier.MEDIUM) -> bool:
        if value is None or not self._should_attempt():
            return False

        try:
            payload = self._serialize(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Serialization failed for {key}: {e}")
            self.stats["errors"] += 1
            return False

        ttl = self.ttl_for(tier)
        try:
            stored = await self.store.set(self._key(key), payload, ttl)
        except CacheUnavailableError as e:
            self._mark_unavailable("SET", e)
            return False
        await self._mark_available()

        if stored:
            self.stats["writes"] += 1
            logger.debug(f"Cached {key} for {ttl}s")
        else:
            self.stats["errors"] += 1
        return stored

    async def exists(self, key: str) -> bool:
        if not self._should_attempt():
            return False
        try:
            found = await self.store.exists(self._key(key))
        except CacheUnavailableError as e:
            self._mark_unavailable("EXISTS", e)
            return False
        await self._mark_available()
        return found

    async def invalidate(self, key: str) -> bool:
        if not self._should_attempt():
            self._defer("key", key)
            return False
        try:
            deleted = await self.store.delete(self._key(key))
        except CacheUnavailableError as e:
            self._mark_unavailable("DEL", e)
            self._defer("key", key)
            logger.warning(f"Could not invalidate {key}, deferred: {e}")
            return False
        await self._mark_available()
        if deleted is None:
            self.stats["errors"] += 1
            logger.error(f"Invalidation of {key} failed, entry may be stale")
            return False
        self.stats["invalidated"] += deleted
        return deleted > 0

    async def invalidate_pattern(self, pattern: str) -> InvalidationResult:
        """
        Delete every key matching ``pattern``.

        Walks the keyspace with SCAN until the cursor returns to 0 and issues
        one DEL per batch of at most ``scan_batch_size`` keys. Stops at the
        first failed SCAN or DEL and reports ``success=False``.
        """
        if not self._should_attempt():
            self._defer("pattern", pattern)
            return InvalidationResult(
                0, pattern, success=False, error="cache unavailable, deferred"
            )

        match = self._key(pattern)
        cursor = 0
        deleted = 0

        try:
            while True:
                page = await self.store.scan(cursor, match, self.scan_batch_size)
                if page is None:
                    return self._sweep_failed(pattern, deleted, "scan failed")
                cursor, keys = page
                for start in range(0, len(keys), self.scan_batch_size):
                    count = await self.store.delete(*keys[start : start + self.scan_batch_size])
                    if count is None:
                        return self._sweep_failed(pattern, deleted, "delete failed")
                    deleted += count
                if cursor == 0:
                    break
        except CacheUnavailableError as e:
            self._mark_unavailable("INVALIDATE_PATTERN", e)
            self._defer("pattern", pattern)
            return InvalidationResult(deleted, pattern, success=False, error=str(e))

        await self._mark_available()
        self.stats["invalidated"] += deleted
        logger.debug(f"Pattern delete completed: {pattern} deleted={deleted}")
        return InvalidationResult(deleted, pattern, success=True)

    def _sweep_failed(self, pattern: str, deleted: int, error: str) -> InvalidationResult:
        self.stats["errors"] += 1
        self.stats["invalidated"] += deleted
        logger.error(f"Pattern delete {pattern} stopped after {deleted} key(s): {error}")
        return InvalidationResult(deleted, pattern, success=False, error=error)

    async def invalidate_multiple(
        self, patterns: Iterable[str] | str
    ) -> MultiInvalidationResult:
        if isinstance(patterns, str):
            patterns = [patterns]
        summary = MultiInvalidationResult(patterns=list(patterns))
        for pattern in summary.patterns:
            summary.results.append(await self.invalidate_pattern(pattern))
        return summary

    def get_stats(self) -> dict:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "available": True,
            "healthy": self._healthy,
            "deferred": len(self._deferred),
            "hit_rate": self.stats["hits"] / lookups if lookups else 0,
            "ttl": {tier.value: seconds for tier, seconds in self.ttl.items()},
        }

    async def close(self) -> None:
        await self.store.close()


class NullCacheService:
    """Stand-in used when caching is disabled: every read misses."""

    def is_healthy(self) -> bool:
        return False

    async def connect(self) -> bool:
        return False

    async def read(self, key: str) -> Any | None:
        return None

    async def write(self, key: str, value: Any, tier: TTLTier = TTLTier.MEDIUM) -> bool:
        return False

    async def exists(self, key: str) -> bool:
        return False

    async def invalidate(self, key: str) -> bool:
        return False

    async def invalidate_pattern(self, pattern: str) -> InvalidationResult:
        return InvalidationResult(0, pattern, success=True)

    async def invalidate_multiple(
        self, patterns: Iterable[str] | str
    ) -> MultiInvalidationResult:
        if isinstance(patterns, str):
            patterns = [patterns]
        patterns = list(patterns)
        return MultiInvalidationResult(
            patterns=patterns,
            results=[InvalidationResult(0, p, success=True) for p in patterns],
        )

    def get_stats(self) -> dict:
        return {"available": False, "healthy": False, "backend": "null"}

    async def close(self) -> None:
        return None


def create_cache_service(settings: Settings) -> CacheService:
    if not settings.cache_enabled:
        logger.info("Caching disabled, using null cache")
        return NullCacheService()
    return RedisCacheService.from_settings(settings)
