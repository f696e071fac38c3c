import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from task_api.cache.service import CacheService, create_cache_service
from task_api.core.config import Settings
from task_api.database import DataAccessor, create_db_and_tables, create_engine_from_settings
from task_api.repositories.category_repository import CategoryRepository
from task_api.repositories.task_repository import TaskRepository
from task_api.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a request needs, built once per process."""

    settings: Settings
    db: DataAccessor
    cache: CacheService
    users: UserRepository
    tasks: TaskRepository
    categories: CategoryRepository

    @classmethod
    def create(cls, settings: Settings, db: DataAccessor, cache: CacheService) -> "AppContext":
        tasks = TaskRepository(db, cache)
        return cls(
            settings=settings,
            db=db,
            cache=cache,
            users=UserRepository(db, cache),
            tasks=tasks,
            categories=CategoryRepository(db, cache, tasks),
        )

    async def health(self) -> dict:
        database_ok = await self.db.ping()
        cache_stats = self.cache.get_stats()
        if not database_ok:
            status = "unhealthy"
        elif cache_stats["available"] and not cache_stats["healthy"]:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "checks": {
                "database": {
                    "status": "healthy" if database_ok else "unhealthy",
                    "pool": self.db.pool_status(),
                },
                "cache": cache_stats,
            },
        }

    async def close(self):
        await self.cache.close()
        await self.db.dispose()


async def build_context(settings: Settings, engine: AsyncEngine | None = None) -> AppContext:
    engine = engine or create_engine_from_settings(settings)
    if settings.auto_create_schema:
        await create_db_and_tables(engine)

    cache = create_cache_service(settings)
    await cache.connect()

    context = AppContext.create(settings, DataAccessor(engine), cache)
    logger.info("Application context initialized")
    return context
