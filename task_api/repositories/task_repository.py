import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError
from sqlalchemy import DateTime
from sqlalchemy.exc import SQLAlchemyError

from task_api.cache import keys
from task_api.cache.service import MultiInvalidationResult, TTLTier
from task_api.core.errors import QueryValidationError, ReferentialConstraintError
from task_api.database import DataAccessor, Transaction
from task_api.models import (
    Pagination,
    TaskCreate,
    TaskFilters,
    TaskPage,
    TaskRead,
    TaskStats,
    TaskUpdate,
)
from task_api.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

TIMESTAMP = DateTime(timezone=True)

# The only caller-influenced text that is ever interpolated into SQL.
SORT_COLUMNS = {
    "created_at": "t.created_at",
    "due_date": "t.due_date",
    "priority": "t.priority",
    "title": "t.title",
}
SORT_ORDERS = {"asc": "ASC", "desc": "DESC"}

UPDATABLE_COLUMNS = ("title", "description", "completed", "priority", "due_date", "category_id")
NOT_NULL_COLUMNS = ("title", "completed", "priority")

TASK_COLUMNS = """
    t.id, t.title, t.description, t.completed, t.priority, t.due_date,
    t.category_id, c.name AS category_name, c.color AS category_color,
    t.created_at, t.updated_at
"""


def _validation_error(kind: str, error: ValidationError) -> QueryValidationError:
    fields = sorted({".".join(str(p) for p in err["loc"]) or kind for err in error.errors()})
    return QueryValidationError(f"Invalid {kind}: {', '.join(fields)}")


class TaskRepository(BaseRepository):
    """
    Tasks with PostgreSQL + Redis cache-aside.

    Reads go through the cache (listings and stats on the short tier, single
    tasks on the medium tier). Every successful write invalidates the task's
    own key and the ``user:<id>:tasks:*`` family before returning.
    """

    table_name = "tasks"

    # Filters

    @staticmethod
    def parse_filters(filters: Mapping[str, Any] | TaskFilters | None) -> TaskFilters:
        if isinstance(filters, TaskFilters):
            return filters
        try:
            return TaskFilters.model_validate(dict(filters or {}))
        except ValidationError as e:
            raise _validation_error("task filters", e) from e

    @staticmethod
    def _order_by(criteria: TaskFilters) -> str:
        column = SORT_COLUMNS.get(criteria.sort)
        direction = SORT_ORDERS.get(str(criteria.order).lower())
        if column is None:
            raise QueryValidationError(
                f"Invalid sort field: {criteria.sort}. Allowed: {', '.join(SORT_COLUMNS)}"
            )
        if direction is None:
            raise QueryValidationError(
                f"Invalid order direction: {criteria.order}. Allowed: {', '.join(SORT_ORDERS)}"
            )
        return f"{column} {direction}, t.id {direction}"

    # Reads

    async def list_tasks(
        self, user_id: int, filters: Mapping[str, Any] | TaskFilters | None = None
    ) -> TaskPage:
        criteria = self.parse_filters(filters)
        order_by = self._order_by(criteria)
        key = keys.user_tasks_key(user_id, criteria.model_dump(exclude_none=True))

        async def load() -> TaskPage:
            return await self._query_page(user_id, criteria, order_by)

        return await self._read_through(key, TaskPage, load, TTLTier.SHORT)

    async def _query_page(
        self, user_id: int, criteria: TaskFilters, order_by: str
    ) -> TaskPage:
        conditions = ["t.user_id = :user_id"]
        params: dict[str, Any] = {"user_id": user_id}

        if criteria.completed is not None:
            conditions.append("t.completed = :completed")
            params["completed"] = criteria.completed
        if criteria.priority:
            conditions.append("t.priority = :priority")
            params["priority"] = criteria.priority
        if criteria.category_id is not None:
            conditions.append("t.category_id = :category_id")
            params["category_id"] = criteria.category_id

        where = " AND ".join(conditions)
        try:
            rows = await self.db.execute(
                f"""
                SELECT {TASK_COLUMNS}
                FROM tasks t
                LEFT JOIN categories c ON t.category_id = c.id
                WHERE {where}
                ORDER BY {order_by}
                LIMIT :limit OFFSET :offset
                """,
                {**params, "limit": criteria.limit, "offset": criteria.offset},
            )
            count = await self.db.execute(
                f"SELECT COUNT(*) AS total FROM tasks t WHERE {where}", params
            )
        except SQLAlchemyError:
            logger.error(f"Failed to get tasks for user {user_id} ({criteria})")
            raise

        total = int(count.rows[0]["total"])
        return TaskPage(
            items=[TaskRead.model_validate(row) for row in rows.rows],
            pagination=Pagination(
                total=total,
                limit=criteria.limit,
                offset=criteria.offset,
                has_more=criteria.offset + criteria.limit < total,
            ),
        )

    async def get_by_id(self, task_id: int, user_id: int) -> TaskRead | None:
        key = keys.user_task_key(user_id, task_id)

        async def load() -> TaskRead | None:
            return await self._fetch(self.db, task_id, user_id)

        return await self._read_through(key, TaskRead, load, TTLTier.MEDIUM)

    async def _fetch(
        self, executor: DataAccessor | Transaction, task_id: int, user_id: int
    ) -> TaskRead | None:
        result = await executor.execute(
            f"""
            SELECT {TASK_COLUMNS}
            FROM tasks t
            LEFT JOIN categories c ON t.category_id = c.id
            WHERE t.id = :task_id AND t.user_id = :user_id
            """,
            {"task_id": task_id, "user_id": user_id},
        )
        row = result.first()
        return TaskRead.model_validate(row) if row else None

    async def stats(self, user_id: int) -> TaskStats:
        key = keys.user_task_stats_key(user_id)

        async def load() -> TaskStats:
            result = await self.db.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN completed THEN 1 ELSE 0 END), 0) AS completed,
                    COALESCE(SUM(CASE WHEN NOT completed THEN 1 ELSE 0 END), 0) AS pending,
                    COALESCE(SUM(CASE WHEN priority = 'urgent' THEN 1 ELSE 0 END), 0) AS urgent,
                    COALESCE(SUM(CASE WHEN priority = 'high' THEN 1 ELSE 0 END), 0) AS high_priority,
                    COALESCE(SUM(
                        CASE WHEN due_date < :now AND NOT completed THEN 1 ELSE 0 END
                    ), 0) AS overdue
                FROM tasks
                WHERE user_id = :user_id
                """,
                {"user_id": user_id, "now": self.utc_now()},
                types={"now": TIMESTAMP},
            )
            return TaskStats.model_validate({k: int(v or 0) for k, v in result.rows[0].items()})

        # derived and frequently changing, so short tier
        return await self._read_through(key, TaskStats, load, TTLTier.SHORT)

    # Writes

    async def _ensure_category_owned(
        self, executor: DataAccessor | Transaction, category_id: int, user_id: int
    ):
        result = await executor.execute(
            "SELECT id FROM categories WHERE id = :category_id AND user_id = :user_id",
            {"category_id": category_id, "user_id": user_id},
        )
        if not result.rows:
            raise ReferentialConstraintError(
                "Category not found or does not belong to user"
            )

    async def create(self, user_id: int, data: TaskCreate | Mapping[str, Any]) -> TaskRead:
        if not isinstance(data, TaskCreate):
            try:
                data = TaskCreate.model_validate(dict(data))
            except ValidationError as e:
                raise _validation_error("task", e) from e

        async def insert(tx: Transaction) -> TaskRead:
            if data.category_id is not None:
                await self._ensure_category_owned(tx, data.category_id, user_id)
            result = await tx.execute(
                """
                INSERT INTO tasks
                    (title, description, completed, priority, due_date,
                     category_id, user_id, created_at)
                VALUES
                    (:title, :description, :completed, :priority, :due_date,
                     :category_id, :user_id, :created_at)
                RETURNING id
                """,
                {
                    "title": data.title,
                    "description": data.description,
                    "completed": False,
                    "priority": data.priority,
                    "due_date": data.due_date,
                    "category_id": data.category_id,
                    "user_id": user_id,
                    "created_at": self.utc_now(),
                },
                types={"due_date": TIMESTAMP, "created_at": TIMESTAMP},
            )
            return await self._fetch(tx, result.rows[0]["id"], user_id)

        try:
            task = await self.db.with_transaction(insert)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create task for user {user_id}: {e}")
            raise

        await self.invalidate_task(user_id, task.id)
        logger.info(f"Task created: id={task.id} user={user_id}")
        return task

    async def update(
        self, task_id: int, user_id: int, data: TaskUpdate | Mapping[str, Any]
    ) -> TaskRead | None:
        if not isinstance(data, TaskUpdate):
            try:
                data = TaskUpdate.model_validate(dict(data))
            except ValidationError as e:
                raise _validation_error("task update", e) from e

        changes = data.model_dump(exclude_unset=True)
        for column in NOT_NULL_COLUMNS:
            if column in changes and changes[column] is None:
                del changes[column]
        if not changes:
            raise QueryValidationError("No fields to update")

        async def apply(tx: Transaction) -> TaskRead | None:
            existing = await tx.execute(
                "SELECT id FROM tasks WHERE id = :task_id AND user_id = :user_id",
                {"task_id": task_id, "user_id": user_id},
            )
            if not existing.rows:
                return None
            if changes.get("category_id") is not None:
                await self._ensure_category_owned(tx, changes["category_id"], user_id)

            set_clause, params = self.build_set_clause(changes, UPDATABLE_COLUMNS)
            types = {"updated_at": TIMESTAMP}
            if "due_date" in params:
                types["due_date"] = TIMESTAMP
            await tx.execute(
                f"""
                UPDATE tasks
                SET {set_clause}, updated_at = :updated_at
                WHERE id = :task_id AND user_id = :user_id
                """,
                {**params, "updated_at": self.utc_now(), "task_id": task_id, "user_id": user_id},
                types=types,
            )
            return await self._fetch(tx, task_id, user_id)

        task = await self.db.with_transaction(apply)
        if task is None:
            return None

        await self.invalidate_task(user_id, task_id)
        logger.info(f"Task updated: id={task_id} user={user_id} fields={sorted(changes)}")
        return task

    async def complete(self, task_id: int, user_id: int) -> TaskRead | None:
        return await self.update(task_id, user_id, TaskUpdate(completed=True))

    async def delete(self, task_id: int, user_id: int) -> bool:
        result = await self.db.execute(
            "DELETE FROM tasks WHERE id = :task_id AND user_id = :user_id",
            {"task_id": task_id, "user_id": user_id},
        )
        if result.row_count == 0:
            return False

        await self.invalidate_task(user_id, task_id)
        logger.info(f"Task deleted: id={task_id} user={user_id}")
        return True

    # Invalidation

    async def invalidate_task(self, user_id: int, task_id: int):
        """Drop the task's own entry and every listing/stat of its owner."""
        await asyncio.gather(
            self.cache.invalidate(keys.user_task_key(user_id, task_id)),
            self.cache.invalidate_pattern(keys.user_tasks_pattern(user_id)),
        )

    async def invalidate_user_tasks(self, user_id: int) -> MultiInvalidationResult:
        """Drop every cached task entry of a user, listings and items alike."""
        return await self.cache.invalidate_multiple(
            [keys.user_tasks_pattern(user_id), keys.user_task_items_pattern(user_id)]
        )
