"""
Custom exception hierarchy for centralized error handling.
All exceptions map to appropriate HTTP status codes.
"""
from typing import Any, Dict, Optional


class AppException(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


class InvalidInputError(AppException):
    """Structurally invalid request (bad viewer id, negative offset, ...)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="INVALID_INPUT",
            details=details,
        )


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=404,
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": identifier},
        )


class DependencyUnavailableError(AppException):
    """
    A collaborator (profile store, cache, candidate source, trending source)
    timed out or failed. Absorbed by the feed service, never surfaced to callers.
    """

    def __init__(self, subsystem: str, reason: str = "Unknown") -> None:
        super().__init__(
            message=f"Dependency unavailable: {subsystem} ({reason})",
            status_code=503,
            error_code="DEPENDENCY_UNAVAILABLE",
            details={"subsystem": subsystem, "reason": reason},
        )
        self.subsystem = subsystem


class ExperimentConfigurationError(AppException):
    """Experiment rejected at creation time."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            message=f"Invalid experiment configuration: {reason}",
            status_code=422,
            error_code="EXPERIMENT_CONFIGURATION_ERROR",
            details={"reason": reason},
        )


class ExperimentStateError(AppException):
    """Illegal experiment lifecycle transition."""

    def __init__(self, experiment_id: str, current: str, requested: str) -> None:
        super().__init__(
            message=(
                f"Experiment {experiment_id} cannot move from "
                f"{current} to {requested}"
            ),
            status_code=409,
            error_code="EXPERIMENT_STATE_ERROR",
            details={
                "experiment_id": experiment_id,
                "current": current,
                "requested": requested,
            },
        )


class DataQualityError(AppException):
    """A candidate item is missing required fields. Excluded, never fatal."""

    def __init__(self, item_id: str, reason: str) -> None:
        super().__init__(
            message=f"Candidate {item_id} rejected: {reason}",
            status_code=422,
            error_code="DATA_QUALITY_ERROR",
            details={"item_id": item_id, "reason": reason},
        )
        self.item_id = item_id
        self.reason = reason


class RequestCancelledError(AppException):
    """Client disconnected before the ranking finished."""

    def __init__(self, stage: str) -> None:
        super().__init__(
            message=f"Request cancelled by client during {stage}",
            status_code=499,
            error_code="CLIENT_CLOSED_REQUEST",
            details={"stage": stage},
        )


class CircuitBreakerOpenError(AppException):
    """Circuit breaker is open - service calls blocked."""

    def __init__(self, service_name: str) -> None:
        super().__init__(
            message=f"Circuit breaker open for: {service_name}",
            status_code=503,
            error_code="CIRCUIT_BREAKER_OPEN",
            details={"service": service_name},
        )
