"""
Circuit breaker guarding the feed pipeline's dependencies.

Consecutive failures past a threshold open the circuit. Once the recovery
timeout has elapsed a single trial call is let through; its outcome closes
the circuit again or re-opens it for another timeout.
"""
import logging
import time
from enum import Enum
from threading import Lock
from typing import Awaitable, Callable, Dict, Optional, TypeVar, Union

from feedrank.core.exceptions import CircuitBreakerOpenError
from feedrank.core.telemetry import BREAKER_STATE

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


_GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Usage:
        breaker = CircuitBreaker("ranking_engine", failure_threshold=5)
        page = breaker.call(lambda: engine.rank(...), fallback=popularity_page)
        batch = await breaker.call_async(lambda: store.list_candidate_items(...))
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_sec: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout_sec = recovery_timeout_sec
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = Lock()
        BREAKER_STATE.labels(breaker=name).set(0)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> Dict[str, Union[str, int]]:
        """Name, state and failure streak for readiness reporting."""
        with self._lock:
            return {
                "name": self._name,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
            }

    def call(self, func: Callable[[], T], fallback: Optional[Callable[[], T]] = None) -> T:
        """
        Run `func` unless the circuit is open.

        Args:
            func: Guarded call
            fallback: Used when the circuit rejects the call or `func` raises

        Raises:
            CircuitBreakerOpenError: Rejected and no fallback given
            Exception: Whatever `func` raised, when no fallback is given
        """
        if not self._admit():
            return self._reject(fallback)
        try:
            result = func()
        except Exception as e:
            self._record(success=False)
            if fallback is None:
                raise
            logger.warning(f"Circuit breaker '{self._name}' call failed, using fallback: {e!r}")
            return fallback()
        self._record(success=True)
        return result

    async def call_async(
        self,
        func: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], T]] = None,
    ) -> T:
        """`call` for coroutines (I/O-bound collaborators)."""
        if not self._admit():
            return self._reject(fallback)
        try:
            result = await func()
        except Exception as e:
            self._record(success=False)
            if fallback is None:
                raise
            logger.warning(f"Circuit breaker '{self._name}' call failed, using fallback: {e!r}")
            return fallback()
        self._record(success=True)
        return result

    def reset(self) -> None:
        """Force the circuit closed."""
        with self._lock:
            self._consecutive_failures = 0
            self._trial_in_flight = False
            self._move_to(CircuitState.CLOSED)

    def _admit(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self._recovery_timeout_sec:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            # Half-open admits one trial call at a time
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def _reject(self, fallback: Optional[Callable[[], T]]) -> T:
        if fallback is None:
            raise CircuitBreakerOpenError(self._name)
        logger.debug(f"Circuit breaker '{self._name}' rejected call, using fallback")
        return fallback()

    def _record(self, success: bool) -> None:
        with self._lock:
            self._trial_in_flight = False
            if success:
                self._consecutive_failures = 0
                self._move_to(CircuitState.CLOSED)
                return

            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self._failure_threshold:
                self._opened_at = self._clock()
                self._move_to(CircuitState.OPEN)

    def _move_to(self, state: CircuitState) -> None:
        # Caller holds the lock
        if state == self._state:
            return
        level = logging.ERROR if state == CircuitState.OPEN else logging.INFO
        logger.log(
            level,
            f"Circuit breaker '{self._name}': {self._state.value} -> {state.value} "
            f"(consecutive_failures={self._consecutive_failures})",
        )
        self._state = state
        BREAKER_STATE.labels(breaker=self._name).set(_GAUGE_VALUES[state])
