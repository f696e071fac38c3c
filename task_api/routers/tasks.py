from fastapi import APIRouter, HTTPException, Query, status

from task_api.dependencies import ContextDep, UserIdDep
from task_api.models import Priority, SortField, SortOrder, TaskCreate, TaskFilters, TaskUpdate

router = APIRouter(prefix="/tasks", tags=["tasks"])


def _not_found(task_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Task with id {task_id} not found",
    )


@router.get("/")
async def get_tasks(
    ctx: ContextDep,
    user_id: UserIdDep,
    completed: bool | None = None,
    priority: Priority | None = None,
    category_id: int | None = Query(default=None, ge=1),
    sort: SortField = "created_at",
    order: SortOrder = "desc",
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    filters = TaskFilters(
        completed=completed,
        priority=priority,
        category_id=category_id,
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )
    page = await ctx.tasks.list_tasks(user_id, filters)
    return {"success": True, "data": page.model_dump(mode="json"), "cached": page.from_cache}


@router.get("/stats")
async def get_task_stats(ctx: ContextDep, user_id: UserIdDep):
    stats = await ctx.tasks.stats(user_id)
    return {"success": True, "data": stats.model_dump(mode="json"), "cached": stats.from_cache}


@router.get("/{task_id}")
async def get_task(task_id: int, ctx: ContextDep, user_id: UserIdDep):
    """Get a specific task by ID"""
    task = await ctx.tasks.get_by_id(task_id, user_id)
    if not task:
        raise _not_found(task_id)
    return {"success": True, "data": task.model_dump(mode="json"), "cached": task.from_cache}


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, ctx: ContextDep, user_id: UserIdDep):
    """Create a new task"""
    task = await ctx.tasks.create(user_id, task_data)
    return {"success": True, "data": task.model_dump(mode="json")}


@router.patch("/{task_id}")
async def update_task(
    task_id: int, task_data: TaskUpdate, ctx: ContextDep, user_id: UserIdDep
):
    task = await ctx.tasks.update(task_id, user_id, task_data)
    if not task:
        raise _not_found(task_id)
    return {"success": True, "data": task.model_dump(mode="json")}


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: int, ctx: ContextDep, user_id: UserIdDep):
    """Delete a task"""
    if not await ctx.tasks.delete(task_id, user_id):
        raise _not_found(task_id)


@router.post("/{task_id}/complete")
async def mark_task_complete(task_id: int, ctx: ContextDep, user_id: UserIdDep):
    """Mark a task as completed"""
    task = await ctx.tasks.complete(task_id, user_id)
    if not task:
        raise _not_found(task_id)
    return {"success": True, "data": task.model_dump(mode="json")}
