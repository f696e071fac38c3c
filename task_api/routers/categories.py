from fastapi import APIRouter, HTTPException, status

from task_api.dependencies import ContextDep, UserIdDep
from task_api.models import CategoryCreate, CategoryUpdate

router = APIRouter(prefix="/categories", tags=["categories"])


def _not_found(category_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Category with id {category_id} not found",
    )


@router.get("/")
async def get_categories(ctx: ContextDep, user_id: UserIdDep):
    categories = await ctx.categories.list_categories(user_id)
    return {
        "success": True,
        "data": categories.model_dump(mode="json")["items"],
        "cached": categories.from_cache,
    }


@router.get("/{category_id}")
async def get_category(category_id: int, ctx: ContextDep, user_id: UserIdDep):
    category = await ctx.categories.get_by_id(category_id, user_id)
    if not category:
        raise _not_found(category_id)
    return {"success": True, "data": category.model_dump(mode="json"), "cached": category.from_cache}


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_category(data: CategoryCreate, ctx: ContextDep, user_id: UserIdDep):
    category = await ctx.categories.create(user_id, data)
    return {"success": True, "data": category.model_dump(mode="json")}


@router.patch("/{category_id}")
async def update_category(
    category_id: int, data: CategoryUpdate, ctx: ContextDep, user_id: UserIdDep
):
    category = await ctx.categories.update(category_id, user_id, data)
    if not category:
        raise _not_found(category_id)
    return {"success": True, "data": category.model_dump(mode="json")}


@router.delete("/{category_id}")
async def delete_category(category_id: int, ctx: ContextDep, user_id: UserIdDep):
    """Delete a category; its tasks are kept without a category."""
    if not await ctx.categories.delete(category_id, user_id):
        raise _not_found(category_id)
    return {"success": True, "message": "Category deleted successfully"}
