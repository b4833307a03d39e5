"""Core infrastructure components."""
from .cache import CacheInterface, InMemoryCache
from .circuit_breaker import CircuitBreaker, CircuitState
from .exceptions import (
    AppException,
    CircuitBreakerOpenError,
    DataQualityError,
    DependencyUnavailableError,
    ExperimentConfigurationError,
    ExperimentStateError,
    InvalidInputError,
    NotFoundError,
    RequestCancelledError,
)

__all__ = [
    "AppException",
    "CacheInterface",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitState",
    "DataQualityError",
    "DependencyUnavailableError",
    "ExperimentConfigurationError",
    "ExperimentStateError",
    "InMemoryCache",
    "InvalidInputError",
    "NotFoundError",
    "RequestCancelledError",
]
