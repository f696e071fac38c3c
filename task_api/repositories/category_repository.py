import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError
from sqlalchemy import DateTime

from task_api.cache import keys
from task_api.cache.service import CacheService, TTLTier
from task_api.core.errors import ConflictError, QueryValidationError
from task_api.database import DataAccessor, Transaction
from task_api.models import CategoryCreate, CategoryList, CategoryRead, CategoryUpdate
from task_api.repositories.base import BaseRepository
from task_api.repositories.task_repository import TaskRepository

logger = logging.getLogger(__name__)

TIMESTAMP = DateTime(timezone=True)
CATEGORY_COLUMNS = "id, name, color, created_at, updated_at"


class CategoryRepository(BaseRepository):
    """
    Categories owned by a user.

    Task rows embed their category's name and colour, so any category write
    also clears every cached task entry of the owner.
    """

    table_name = "categories"

    def __init__(self, db: DataAccessor, cache: CacheService, tasks: TaskRepository):
        super().__init__(db, cache)
        self.tasks = tasks

    async def list_categories(self, user_id: int) -> CategoryList:
        async def load() -> CategoryList:
            result = await self.db.execute(
                f"SELECT {CATEGORY_COLUMNS} FROM categories WHERE user_id = :user_id ORDER BY name",
                {"user_id": user_id},
            )
            return CategoryList(items=[CategoryRead.model_validate(r) for r in result.rows])

        return await self._read_through(
            keys.user_categories_key(user_id), CategoryList, load, TTLTier.SHORT
        )

    async def get_by_id(self, category_id: int, user_id: int) -> CategoryRead | None:
        async def load() -> CategoryRead | None:
            return await self._fetch(self.db, category_id, user_id)

        return await self._read_through(
            keys.user_category_key(user_id, category_id), CategoryRead, load, TTLTier.MEDIUM
        )

    async def _fetch(
        self, executor: DataAccessor | Transaction, category_id: int, user_id: int
    ) -> CategoryRead | None:
        result = await executor.execute(
            f"SELECT {CATEGORY_COLUMNS} FROM categories WHERE id = :category_id AND user_id = :user_id",
            {"category_id": category_id, "user_id": user_id},
        )
        row = result.first()
        return CategoryRead.model_validate(row) if row else None

    async def _ensure_name_free(
        self, tx: Transaction, user_id: int, name: str, exclude_id: int | None = None
    ):
        result = await tx.execute(
            "SELECT id FROM categories WHERE name = :name AND user_id = :user_id",
            {"name": name, "user_id": user_id},
        )
        if any(row["id"] != exclude_id for row in result.rows):
            raise ConflictError("Category with this name already exists")

    async def create(
        self, user_id: int, data: CategoryCreate | Mapping[str, Any]
    ) -> CategoryRead:
        if not isinstance(data, CategoryCreate):
            try:
                data = CategoryCreate.model_validate(dict(data))
            except ValidationError as e:
                raise QueryValidationError(f"Invalid category: {e.error_count()} error(s)") from e

        async def insert(tx: Transaction) -> CategoryRead:
            await self._ensure_name_free(tx, user_id, data.name)
            result = await tx.execute(
                """
                INSERT INTO categories (name, color, user_id, created_at)
                VALUES (:name, :color, :user_id, :created_at)
                RETURNING id
                """,
                {
                    "name": data.name,
                    "color": data.color,
                    "user_id": user_id,
                    "created_at": self.utc_now(),
                },
                types={"created_at": TIMESTAMP},
            )
            return await self._fetch(tx, result.rows[0]["id"], user_id)

        category = await self.db.with_transaction(insert)
        await self.cache.invalidate(keys.user_categories_key(user_id))
        logger.info(f"Category created: id={category.id} user={user_id}")
        return category

    async def update(
        self, category_id: int, user_id: int, data: CategoryUpdate | Mapping[str, Any]
    ) -> CategoryRead | None:
        if not isinstance(data, CategoryUpdate):
            try:
                data = CategoryUpdate.model_validate(dict(data))
            except ValidationError as e:
                raise QueryValidationError(f"Invalid category: {e.error_count()} error(s)") from e

        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise QueryValidationError("No fields to update")

        async def apply(tx: Transaction) -> CategoryRead | None:
            if await self._fetch(tx, category_id, user_id) is None:
                return None
            if "name" in changes:
                await self._ensure_name_free(tx, user_id, changes["name"], exclude_id=category_id)
            set_clause, params = self.build_set_clause(changes, ("name", "color"))
            await tx.execute(
                f"""
                UPDATE categories SET {set_clause}, updated_at = :updated_at
                WHERE id = :category_id AND user_id = :user_id
                """,
                {**params, "updated_at": self.utc_now(), "category_id": category_id, "user_id": user_id},
                types={"updated_at": TIMESTAMP},
            )
            return await self._fetch(tx, category_id, user_id)

        category = await self.db.with_transaction(apply)
        if category is None:
            return None

        await self.invalidate_category(user_id, category_id)
        logger.info(f"Category updated: id={category_id} user={user_id}")
        return category

    async def delete(self, category_id: int, user_id: int) -> bool:
        async def remove(tx: Transaction) -> bool:
            # detach tasks explicitly; not every backend enforces ON DELETE SET NULL
            await tx.execute(
                """
                UPDATE tasks SET category_id = NULL
                WHERE category_id = :category_id AND user_id = :user_id
                """,
                {"category_id": category_id, "user_id": user_id},
            )
            result = await tx.execute(
                "DELETE FROM categories WHERE id = :category_id AND user_id = :user_id",
                {"category_id": category_id, "user_id": user_id},
            )
            return result.row_count > 0

        deleted = await self.db.with_transaction(remove)
        if not deleted:
            return False

        await self.invalidate_category(user_id, category_id)
        logger.info(f"Category deleted: id={category_id} user={user_id}")
        return True

    async def invalidate_category(self, user_id: int, category_id: int):
        await self.cache.invalidate(keys.user_category_key(user_id, category_id))
        await self.cache.invalidate(keys.user_categories_key(user_id))
        await self.tasks.invalidate_user_tasks(user_id)
