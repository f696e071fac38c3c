from fastapi import Depends, Header, HTTPException, Request, status
from typing_extensions import Annotated

from task_api.context import AppContext


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_current_user_id(
    x_user_id: Annotated[int | None, Header(ge=1)] = None,
) -> int:
    """
    Id of the authenticated caller.

    Token verification happens upstream (API gateway / auth middleware),
    which forwards the verified user id in ``X-User-Id``.
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_user_id


ContextDep = Annotated[AppContext, Depends(get_context)]
UserIdDep = Annotated[int, Depends(get_current_user_id)]
