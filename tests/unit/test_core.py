from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI

from feedrank.core.cache import InMemoryCache
from feedrank.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState
from feedrank.core.telemetry import setup_telemetry


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _boom():
    raise RuntimeError("Error")


class TestCircuitBreaker:
    def test_initial_state(self):
        cb = CircuitBreaker("ranking_engine", failure_threshold=2)
        assert cb.state == CircuitState.CLOSED
        assert cb.snapshot() == {"name": "ranking_engine", "state": "closed", "consecutive_failures": 0}

    def test_call_opens_after_threshold(self):
        cb = CircuitBreaker("test", failure_threshold=2)
        mock_func = MagicMock(side_effect=RuntimeError("Error"))

        with pytest.raises(RuntimeError):
            cb.call(mock_func)
        assert cb.state == CircuitState.CLOSED

        with pytest.raises(RuntimeError):
            cb.call(mock_func)
        assert cb.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerOpenError):
            cb.call(lambda: "should not run")

    def test_success_resets_failure_streak(self):
        cb = CircuitBreaker("test", failure_threshold=2)

        with pytest.raises(RuntimeError):
            cb.call(_boom)
        cb.call(lambda: "ok")
        with pytest.raises(RuntimeError):
            cb.call(_boom)

        assert cb.state == CircuitState.CLOSED

    def test_fallback_usage(self):
        cb = CircuitBreaker("test", failure_threshold=1, recovery_timeout_sec=30)
        mock_fallback = MagicMock(return_value="popularity")

        assert cb.call(_boom, fallback=mock_fallback) == "popularity"
        assert cb.state == CircuitState.OPEN

        # Open: fallback without trying the function
        mock_func = MagicMock(return_value="ranked")
        assert cb.call(mock_func, fallback=mock_fallback) == "popularity"
        mock_func.assert_not_called()

    def test_recovery_half_open(self):
        clock = _Clock()
        cb = CircuitBreaker("test", failure_threshold=1, recovery_timeout_sec=10, clock=clock)
        with pytest.raises(RuntimeError):
            cb.call(_boom)

        clock.now += 5
        with pytest.raises(CircuitBreakerOpenError):
            cb.call(lambda: "too early")

        clock.now += 5
        assert cb.call(lambda: "recovered") == "recovered"
        assert cb.state == CircuitState.CLOSED

    def test_failed_trial_reopens(self):
        clock = _Clock()
        cb = CircuitBreaker("test", failure_threshold=3, recovery_timeout_sec=10, clock=clock)
        for _ in range(3):
            with pytest.raises(RuntimeError):
                cb.call(_boom)

        clock.now += 10
        with pytest.raises(RuntimeError):
            cb.call(_boom)

        # One failed trial is enough, and the timeout restarts
        assert cb.state == CircuitState.OPEN
        clock.now += 9
        with pytest.raises(CircuitBreakerOpenError):
            cb.call(lambda: "still open")

    def test_manual_reset(self):
        cb = CircuitBreaker("test", failure_threshold=1)
        with pytest.raises(RuntimeError):
            cb.call(_boom)
        assert cb.state == CircuitState.OPEN

        cb.reset()
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_async_call(self):
        cb = CircuitBreaker("candidate_source", failure_threshold=1)
        loader = AsyncMock(return_value=["p1"])

        assert await cb.call_async(loader) == ["p1"]

        failing = AsyncMock(side_effect=TimeoutError())
        with pytest.raises(TimeoutError):
            await cb.call_async(failing)
        assert cb.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerOpenError):
            await cb.call_async(loader)
        assert await cb.call_async(loader, fallback=lambda: []) == []

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self):
        clock = _Clock()
        cb = CircuitBreaker("candidate_source", failure_threshold=1, recovery_timeout_sec=1, clock=clock)
        with pytest.raises(RuntimeError):
            cb.call(_boom)
        clock.now += 1

        async def trial():
            # A concurrent caller arrives while the trial is running
            with pytest.raises(CircuitBreakerOpenError):
                cb.call(lambda: "second")
            return "trial"

        assert await cb.call_async(trial) == "trial"
        assert cb.state == CircuitState.CLOSED


class TestTelemetry:
    @patch("feedrank.core.telemetry.get_settings")
    @patch("feedrank.core.telemetry.Instrumentator")
    def test_setup_telemetry_prometheus_enabled(self, mock_instrumentator, mock_get_settings):
        mock_settings = MagicMock()
        mock_settings.ENABLE_PROMETHEUS = True
        mock_settings.ENABLE_OTEL = False
        mock_get_settings.return_value = mock_settings

        app = FastAPI()
        setup_telemetry(app)

        mock_instrumentator.assert_called_once()
        mock_instrumentator.return_value.instrument.assert_called_once_with(app)

    @patch("feedrank.core.telemetry.get_settings")
    @patch("feedrank.core.telemetry.BatchSpanProcessor")
    @patch("feedrank.core.telemetry.OTLPSpanExporter")
    @patch("feedrank.core.telemetry.trace")
    @patch("feedrank.core.telemetry.FastAPIInstrumentor")
    def test_setup_telemetry_otel_enabled(
        self, mock_fastapi_instr, mock_trace, mock_exporter, mock_processor, mock_get_settings
    ):
        mock_settings = MagicMock()
        mock_settings.ENABLE_PROMETHEUS = False
        mock_settings.ENABLE_OTEL = True
        mock_settings.APP_VERSION = "1.0"
        mock_settings.ALGORITHM_VERSION = "hybrid-v1"
        mock_settings.OTEL_EXPORTER_ENDPOINT = "http://collector:4317"
        mock_settings.DEBUG = False
        mock_get_settings.return_value = mock_settings

        app = FastAPI()
        setup_telemetry(app)

        mock_exporter.assert_called_once_with(endpoint="http://collector:4317")
        mock_fastapi_instr.instrument_app.assert_called_once()
        mock_processor.assert_called_once()
        mock_trace.set_tracer_provider.assert_called_once()


class TestInMemoryCache:
    def test_get_set(self):
        cache = InMemoryCache()
        cache.set("key", "value")
        assert cache.get("key") == "value"
        assert cache.get("missing") is None

    def test_expiration(self):
        clock = _Clock()
        cache = InMemoryCache(default_ttl_seconds=10, clock=clock)
        cache.set("key", "value")
        cache.set("pinned", "value", ttl_seconds=100)

        clock.now += 9
        assert cache.get("key") == "value"

        clock.now += 1
        assert cache.get("key") is None
        assert cache.keys() == ["pinned"]

    def test_lru_bound(self):
        cache = InMemoryCache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")

        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.keys() == ["a", "c"]

    def test_exists_does_not_refresh_recency(self):
        clock = _Clock()
        cache = InMemoryCache(max_entries=2, clock=clock)
        cache.set("a", 1, ttl_seconds=5)
        cache.set("b", 2)

        assert cache.exists("a")
        cache.set("c", 3)
        assert not cache.exists("a")

        cache.set("d", 4, ttl_seconds=5)
        clock.now += 5
        assert not cache.exists("d")

    def test_delete_matching(self):
        cache = InMemoryCache()
        cache.set("feed:v1:aaaa", 1)
        cache.set("feed:v1:bbbb", 2)
        cache.set("feed:v2:aaaa", 3)

        assert cache.delete_matching("feed:v1:*") == 2
        assert cache.keys() == ["feed:v2:aaaa"]
        assert cache.delete("feed:v2:aaaa") is True
        assert cache.delete("feed:v2:aaaa") is False

    def test_compare_and_set(self):
        cache = InMemoryCache()
        first = {"version": 1}

        assert cache.compare_and_set("k", None, first) is True
        assert cache.compare_and_set("k", None, {"version": 9}) is False

        # Identity, not equality
        assert cache.compare_and_set("k", {"version": 1}, {"version": 2}) is False
        second = {"version": 2}
        assert cache.compare_and_set("k", first, second) is True
        assert cache.get("k") is second

    def test_compare_and_set_on_expired_key(self):
        clock = _Clock()
        cache = InMemoryCache(clock=clock)
        cache.set("k", "old", ttl_seconds=1)
        clock.now += 2

        assert cache.compare_and_set("k", None, "new") is True

    def test_cleanup_expired(self):
        clock = _Clock()
        cache = InMemoryCache(clock=clock)
        cache.set("k1", "v1", ttl_seconds=1)
        cache.set("k2", "v2", ttl_seconds=10)

        clock.now += 5

        assert cache.size() == 2
        assert cache.cleanup_expired() == 1
        assert cache.size() == 1
        assert cache.get("k2") == "v2"
