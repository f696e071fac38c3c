import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from task_api.context import build_context
from task_api.core.config import get_settings
from task_api.core.errors import TaskApiError
from task_api.core.logging import configure_logging
from task_api.dependencies import ContextDep
from task_api.routers import categories, tasks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    app.state.context = await build_context(settings)
    yield
    await app.state.context.close()


async def handle_business_error(request: Request, exc: TaskApiError):
    logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": {"code": exc.code, "message": str(exc)}},
    )


async def handle_unexpected_error(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())
    logger.exception(f"Unhandled error {error_id} on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An internal server error occurred",
                "error_id": error_id,
            },
        },
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Task Management API",
        description="Async task management API with PostgreSQL and a Redis cache-aside layer",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(TaskApiError, handle_business_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    # Include routers
    app.include_router(tasks.router)
    app.include_router(categories.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Management API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check(ctx: ContextDep):
        report = await ctx.health()
        code = 503 if report["status"] == "unhealthy" else 200
        return JSONResponse(status_code=code, content=report)

    return app


app = create_app()
