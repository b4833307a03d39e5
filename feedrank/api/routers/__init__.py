"""API routers package."""
from .events import router as events_router
from .experiments import router as experiments_router
from .feed import router as feed_router
from .health import router as health_router
from .metrics import router as metrics_router
from .sessions import router as sessions_router

__all__ = [
    "events_router",
    "experiments_router",
    "feed_router",
    "health_router",
    "metrics_router",
    "sessions_router",
]
