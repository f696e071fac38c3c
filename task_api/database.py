import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.types import TypeEngine
from sqlmodel import SQLModel

from task_api.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None


def _statement(sql: str, types: Mapping[str, TypeEngine] | None):
    statement = text(sql)
    if types:
        statement = statement.bindparams(
            *(bindparam(name, type_=type_) for name, type_ in types.items())
        )
    return statement


def _collect(result: Result) -> QueryResult:
    if result.returns_rows:
        rows = [dict(row) for row in result.mappings().all()]
        return QueryResult(rows=rows, row_count=len(rows))
    return QueryResult(row_count=max(result.rowcount, 0))


async def _run(
    conn: AsyncConnection,
    sql: str,
    params: Mapping[str, Any] | None,
    types: Mapping[str, TypeEngine] | None,
) -> QueryResult:
    logger.debug(f"Executing query: {sql.strip()[:100]}")
    try:
        result = await conn.execute(_statement(sql, types), dict(params or {}))
    except SQLAlchemyError as e:
        logger.error(
            f"Database query error: {e.__class__.__name__} "
            f"({len(params or {})} params) {sql.strip()[:100]}"
        )
        raise
    return _collect(result)


class Transaction:
    """Statement executor bound to one open transaction."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def execute(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        types: Mapping[str, TypeEngine] | None = None,
    ) -> QueryResult:
        return await _run(self.conn, sql, params, types)


class DataAccessor:
    """
    Parameterized statement execution against the relational store.

    Statements use named bind parameters (``:user_id``). Connections come from
    the engine's shared pool and are returned on every exit path. Nothing is
    retried: a failing statement raises to the caller unchanged.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def execute(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        types: Mapping[str, TypeEngine] | None = None,
    ) -> QueryResult:
        """Run one statement in its own short transaction."""
        async with self.engine.begin() as conn:
            return await _run(conn, sql, params, types)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self.engine.connect() as conn:
            await conn.begin()
            logger.debug("Transaction started")
            try:
                yield Transaction(conn)
            except BaseException as e:
                await conn.rollback()
                logger.error(f"Transaction rolled back: {e!r}")
                raise
            else:
                await conn.commit()
                logger.debug("Transaction committed")

    async def with_transaction(self, body: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self.transaction() as tx:
            return await body(tx)

    async def ping(self) -> bool:
        try:
            result = await self.execute("SELECT 1 AS health_check")
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return result.row_count == 1

    def pool_status(self) -> str:
        return self.engine.pool.status()

    async def dispose(self):
        await self.engine.dispose()
        logger.info("Database engine disposed")


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    options: dict[str, Any] = {"echo": settings.database_echo, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
    return create_async_engine(settings.database_url, **options)


async def create_db_and_tables(engine: AsyncEngine):
    # models must be imported so their tables are registered on the metadata
    import task_api.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
