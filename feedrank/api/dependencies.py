"""
Dependency injection container.
Exposes the process-wide engine context and its services.
Uses FastAPI's dependency injection system.
"""
from functools import lru_cache

from fastapi import Depends

from feedrank.context import EngineContext
from feedrank.services.experiments import ExperimentManager
from feedrank.services.feed import FeedService
from feedrank.services.sessions import SessionOptimizer


# =============================================================================
# Singleton Instances (Application Lifetime)
# =============================================================================


@lru_cache()
def get_engine_context() -> EngineContext:
    """Get singleton engine context."""
    return EngineContext()


# =============================================================================
# Request-Scoped Dependencies (Per-Request Lifetime)
# =============================================================================


def get_feed_service(context: EngineContext = Depends(get_engine_context)) -> FeedService:
    """Main entry point for the feed endpoint."""
    return context.feed_service


def get_session_optimizer(context: EngineContext = Depends(get_engine_context)) -> SessionOptimizer:
    return context.sessions


def get_experiment_manager(context: EngineContext = Depends(get_engine_context)) -> ExperimentManager:
    return context.experiments


# =============================================================================
# Cleanup Functions
# =============================================================================


def clear_caches() -> None:
    """Clear all cached singleton instances (for testing)."""
    get_engine_context.cache_clear()
