"""
Health check router for observability.
"""
from fastapi import APIRouter, Depends

from feedrank.api.dependencies import get_engine_context
from feedrank.config import get_settings
from feedrank.context import EngineContext

router = APIRouter(tags=["health"])


@router.get("/health", summary="Health Check")
async def health_check() -> dict:
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/health/ready", summary="Readiness Check")
async def readiness_check(context: EngineContext = Depends(get_engine_context)) -> dict:
    """
    Readiness check for Kubernetes.
    Returns status of circuit breakers and dependencies.
    """
    settings = get_settings()

    return {
        "status": "ready",
        "circuit_breakers": [breaker.snapshot() for breaker in context.feed_service.breakers],
        "profile_store": {"degraded": context.profiles.is_degraded},
        "active_sessions": context.sessions.active_count,
        "feature_flags": {
            "personalization_enabled": settings.PERSONALIZATION_ENABLED,
            "kill_switch_active": settings.KILL_SWITCH_ACTIVE,
            "rollout_percentage": context.feature_flags.rollout_percentage,
        },
    }
