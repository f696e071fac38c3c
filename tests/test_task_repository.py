import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from task_api.cache import keys
from task_api.cache.service import NullCacheService
from task_api.core.errors import QueryValidationError, ReferentialConstraintError
from task_api.repositories.task_repository import TaskRepository

NAMESPACE = "test:"


async def _count_tasks(db) -> int:
    result = await db.execute("SELECT COUNT(*) AS n FROM tasks")
    return result.rows[0]["n"]


async def test_listing_is_cached_until_a_write(ctx, user_id):
    task = await ctx.tasks.create(user_id, {"title": "A", "priority": "high"})
    assert task.completed is False
    assert task.priority == "high"

    first = await ctx.tasks.list_tasks(user_id, {})
    assert first.from_cache is False
    assert [t.id for t in first.items] == [task.id]

    second = await ctx.tasks.list_tasks(user_id, {})
    assert second.from_cache is True
    assert second.model_dump() == first.model_dump()

    await ctx.tasks.update(task.id, user_id, {"completed": True})

    third = await ctx.tasks.list_tasks(user_id, {})
    assert third.from_cache is False
    assert third.items[0].completed is True


async def test_filter_order_shares_one_cache_entry(ctx, user_id):
    await ctx.tasks.create(user_id, {"title": "A", "priority": "high"})
    await ctx.tasks.create(user_id, {"title": "B", "priority": "low"})

    first = await ctx.tasks.list_tasks(user_id, {"priority": "high", "completed": False})
    second = await ctx.tasks.list_tasks(user_id, {"completed": False, "priority": "high"})

    assert first.from_cache is False
    assert second.from_cache is True
    assert [t.title for t in second.items] == ["A"]


async def test_listing_snapshot_is_stored_under_the_user_family(ctx, user_id, redis):
    await ctx.tasks.list_tasks(user_id, {"priority": "urgent"})
    stored = await redis.keys(f"{NAMESPACE}user:{user_id}:tasks:list:*")
    assert len(stored) == 1


async def test_filters_apply(ctx, user_id, other_user_id):
    category = await ctx.categories.create(user_id, {"name": "Work"})
    await ctx.tasks.create(user_id, {"title": "A", "priority": "high", "category_id": category.id})
    done = await ctx.tasks.create(user_id, {"title": "B", "priority": "high"})
    await ctx.tasks.complete(done.id, user_id)
    await ctx.tasks.create(user_id, {"title": "C", "priority": "low"})
    await ctx.tasks.create(other_user_id, {"title": "Other", "priority": "high"})

    high = await ctx.tasks.list_tasks(user_id, {"priority": "high", "sort": "title", "order": "asc"})
    assert [t.title for t in high.items] == ["A", "B"]

    pending = await ctx.tasks.list_tasks(user_id, {"completed": False, "sort": "title", "order": "asc"})
    assert [t.title for t in pending.items] == ["A", "C"]

    in_category = await ctx.tasks.list_tasks(user_id, {"category_id": category.id})
    assert [t.title for t in in_category.items] == ["A"]
    assert in_category.items[0].category_name == "Work"
    assert in_category.items[0].category_color == "#3B82F6"


async def test_pagination(ctx, user_id):
    for i in range(5):
        await ctx.tasks.create(user_id, {"title": f"T{i}"})

    page = await ctx.tasks.list_tasks(user_id, {"limit": 2, "offset": 0, "sort": "title", "order": "asc"})
    assert [t.title for t in page.items] == ["T0", "T1"]
    assert page.pagination.total == 5
    assert page.pagination.has_more is True

    last = await ctx.tasks.list_tasks(user_id, {"limit": 2, "offset": 4, "sort": "title", "order": "asc"})
    assert [t.title for t in last.items] == ["T4"]
    assert last.pagination.has_more is False


@pytest.mark.parametrize(
    "filters",
    [
        {"sort": "title; DROP TABLE tasks"},
        {"order": "sideways"},
        {"limit": 0},
        {"limit": 101},
        {"offset": -1},
        {"priority": "critical"},
        {"owner": 2},
    ],
)
async def test_malformed_filters_are_rejected(ctx, user_id, filters):
    with pytest.raises(QueryValidationError):
        await ctx.tasks.list_tasks(user_id, filters)


async def test_get_by_id_is_cached_and_scoped_to_owner(ctx, user_id, other_user_id):
    task = await ctx.tasks.create(user_id, {"title": "Mine"})

    first = await ctx.tasks.get_by_id(task.id, user_id)
    second = await ctx.tasks.get_by_id(task.id, user_id)
    assert (first.from_cache, second.from_cache) == (False, True)
    assert second.model_dump() == first.model_dump()

    assert await ctx.tasks.get_by_id(task.id, other_user_id) is None
    assert await ctx.tasks.get_by_id(9999, user_id) is None


async def test_missing_rows_are_not_cached(ctx, user_id, redis):
    assert await ctx.tasks.get_by_id(42, user_id) is None
    assert await redis.exists(f"{NAMESPACE}{keys.user_task_key(user_id, 42)}") == 0


async def test_update_refreshes_cached_item(ctx, user_id):
    task = await ctx.tasks.create(user_id, {"title": "Draft"})
    await ctx.tasks.get_by_id(task.id, user_id)

    updated = await ctx.tasks.update(task.id, user_id, {"title": "Final", "priority": "urgent"})
    assert updated.title == "Final"
    assert updated.updated_at is not None

    fresh = await ctx.tasks.get_by_id(task.id, user_id)
    assert fresh.from_cache is False
    assert (fresh.title, fresh.priority) == ("Final", "urgent")


async def test_update_rejects_empty_changes(ctx, user_id):
    task = await ctx.tasks.create(user_id, {"title": "A"})
    with pytest.raises(QueryValidationError):
        await ctx.tasks.update(task.id, user_id, {})
    with pytest.raises(QueryValidationError):
        await ctx.tasks.update(task.id, user_id, {"title": None})


async def test_update_and_delete_of_foreign_task_do_nothing(ctx, user_id, other_user_id):
    task = await ctx.tasks.create(user_id, {"title": "Mine"})
    assert await ctx.tasks.update(task.id, other_user_id, {"title": "Stolen"}) is None
    assert await ctx.tasks.delete(task.id, other_user_id) is False
    assert (await ctx.tasks.get_by_id(task.id, user_id)).title == "Mine"


async def test_delete_invalidates_listing(ctx, user_id):
    task = await ctx.tasks.create(user_id, {"title": "A"})
    await ctx.tasks.list_tasks(user_id)
    await ctx.tasks.get_by_id(task.id, user_id)

    assert await ctx.tasks.delete(task.id, user_id) is True
    assert await ctx.tasks.delete(task.id, user_id) is False

    listing = await ctx.tasks.list_tasks(user_id)
    assert listing.from_cache is False
    assert listing.items == []
    assert await ctx.tasks.get_by_id(task.id, user_id) is None


async def test_create_with_foreign_category_writes_nothing(ctx, user_id, other_user_id):
    foreign = await ctx.categories.create(other_user_id, {"name": "Theirs"})

    with pytest.raises(ReferentialConstraintError):
        await ctx.tasks.create(user_id, {"title": "A", "category_id": foreign.id})
    assert await _count_tasks(ctx.db) == 0

    task = await ctx.tasks.create(user_id, {"title": "B"})
    with pytest.raises(ReferentialConstraintError):
        await ctx.tasks.update(task.id, user_id, {"category_id": foreign.id})
    assert (await ctx.tasks.get_by_id(task.id, user_id)).category_id is None


async def test_create_rejects_invalid_payload(ctx, user_id):
    with pytest.raises(QueryValidationError):
        await ctx.tasks.create(user_id, {"title": ""})
    with pytest.raises(QueryValidationError):
        await ctx.tasks.create(user_id, {"title": "A", "priority": "whenever"})


async def test_stats(ctx, user_id):
    past = datetime.now(timezone.utc) - timedelta(days=3)
    future = datetime.now(timezone.utc) + timedelta(days=3)
    await ctx.tasks.create(user_id, {"title": "late", "priority": "urgent", "due_date": past})
    await ctx.tasks.create(user_id, {"title": "soon", "priority": "high", "due_date": future})
    done = await ctx.tasks.create(user_id, {"title": "done", "priority": "high", "due_date": past})
    await ctx.tasks.complete(done.id, user_id)

    stats = await ctx.tasks.stats(user_id)
    assert stats.from_cache is False
    assert stats.model_dump() == {
        "total": 3,
        "completed": 1,
        "pending": 2,
        "urgent": 1,
        "high_priority": 2,
        "overdue": 1,
    }
    assert (await ctx.tasks.stats(user_id)).from_cache is True


async def test_stats_are_invalidated_by_writes(ctx, user_id):
    assert (await ctx.tasks.stats(user_id)).total == 0
    await ctx.tasks.create(user_id, {"title": "A"})
    stats = await ctx.tasks.stats(user_id)
    assert stats.from_cache is False
    assert stats.total == 1


async def test_writes_leave_other_users_cache_alone(ctx, user_id, other_user_id):
    await ctx.tasks.list_tasks(other_user_id)
    await ctx.tasks.create(user_id, {"title": "A"})
    assert (await ctx.tasks.list_tasks(other_user_id)).from_cache is True


async def test_cache_down_still_serves_correct_results(db, down_cache, user_id):
    tasks = TaskRepository(db, down_cache)
    task = await tasks.create(user_id, {"title": "A", "priority": "high"})

    for _ in range(2):
        page = await tasks.list_tasks(user_id, {})
        assert page.from_cache is False
        assert [t.id for t in page.items] == [task.id]

    updated = await tasks.update(task.id, user_id, {"completed": True})
    assert updated.completed is True
    assert (await tasks.get_by_id(task.id, user_id)).completed is True


async def test_works_without_a_cache(db, user_id):
    tasks = TaskRepository(db, NullCacheService())
    task = await tasks.create(user_id, {"title": "A"})
    assert (await tasks.get_by_id(task.id, user_id)).from_cache is False
    assert (await tasks.get_by_id(task.id, user_id)).from_cache is False


async def test_concurrent_misses_load_once(ctx, user_id, monkeypatch):
    await ctx.tasks.create(user_id, {"title": "A"})
    original = ctx.tasks._query_page
    calls = []

    async def slow_query(*args):
        calls.append(args)
        await asyncio.sleep(0.05)
        return await original(*args)

    monkeypatch.setattr(ctx.tasks, "_query_page", slow_query)

    pages = await asyncio.gather(*(ctx.tasks.list_tasks(user_id) for _ in range(5)))

    assert len(calls) == 1
    assert sum(not p.from_cache for p in pages) == 1
    assert all(p.model_dump() == pages[0].model_dump() for p in pages)


def test_repository_requires_its_collaborators(db, cache):
    with pytest.raises(ValueError):
        TaskRepository(None, cache)
    with pytest.raises(ValueError):
        TaskRepository(db, None)
