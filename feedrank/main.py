"""
FastAPI application for the feed ranking engine.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from feedrank.api.dependencies import get_engine_context
from feedrank.api.routers import (
    events_router,
    experiments_router,
    feed_router,
    health_router,
    metrics_router,
    sessions_router,
)
from feedrank.config import get_settings
from feedrank.config.logging import configure_logging
from feedrank.core.exceptions import AppException, RequestCancelledError
from feedrank.core.telemetry import setup_telemetry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Run the engine context (session reaper, background writes) for the app's lifetime."""
    settings = get_settings()
    logger.info(
        f"Starting {settings.APP_NAME} v{settings.APP_VERSION} "
        f"(algorithm={settings.ALGORITHM_VERSION}, personalization={settings.PERSONALIZATION_ENABLED}, "
        f"kill_switch={settings.KILL_SWITCH_ACTIVE}, rollout={settings.ROLLOUT_PERCENTAGE}%)"
    )

    # Tests swap the context through dependency_overrides
    provider = app.dependency_overrides.get(get_engine_context, get_engine_context)
    context = provider()
    await context.start()
    try:
        yield
    finally:
        logger.info("Stopping engine context")
        await context.aclose()


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Map domain errors to their status code and error body."""
    if isinstance(exc, RequestCancelledError):
        logger.info(f"{request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{request.url.path}: {exc.error_code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else is a bug: log it, return an opaque 500."""
    logger.exception(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(debug=settings.DEBUG)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=(
            "Ranks candidate posts per viewer on six factors, adapts weights within a "
            "session from interaction feedback, runs weight experiments and degrades "
            "to stale or popularity-ordered feeds when dependencies fail."
        ),
        lifespan=lifespan,
    )

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        feed_router,
        sessions_router,
        experiments_router,
        events_router,
        metrics_router,
    ):
        app.include_router(router)

    setup_telemetry(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("feedrank.main:app", host="0.0.0.0", port=8000, reload=get_settings().DEBUG)
