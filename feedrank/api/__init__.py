"""API package - FastAPI routes and dependencies."""
from .dependencies import get_engine_context, get_feed_service
from .routers import (
    events_router,
    experiments_router,
    feed_router,
    health_router,
    metrics_router,
    sessions_router,
)

__all__ = [
    "events_router",
    "experiments_router",
    "feed_router",
    "get_engine_context",
    "get_feed_service",
    "health_router",
    "metrics_router",
    "sessions_router",
]
