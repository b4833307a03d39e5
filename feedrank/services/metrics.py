"""
In-process performance tracker.
Bounded buffer of request and session samples summarized per timeframe,
each metric reported against its target with a trend versus the
previous window.
"""
import math
from collections import deque
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Deque, List, NamedTuple, Optional, Sequence

from feedrank.core.exceptions import InvalidInputError
from feedrank.models.schemas import PerformanceMetric, SessionMetrics, utcnow

TIMEFRAMES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}
# Relative change below which a metric counts as stable
TREND_TOLERANCE = 0.05


class _RequestSample(NamedTuple):
    timestamp: datetime
    latency_ms: float
    cache_hit: bool
    degraded: bool


class _SessionSample(NamedTuple):
    timestamp: datetime
    engagement: float
    satisfaction: float
    duration_sec: float


class _MetricSpec(NamedTuple):
    name: str
    target: float
    higher_is_better: bool


ENGAGEMENT = _MetricSpec("engagement_rate", 0.15, True)
SATISFACTION = _MetricSpec("satisfaction_score", 0.7, True)
SESSION_DURATION = _MetricSpec("session_duration_min", 15.0, True)
LATENCY_P50 = _MetricSpec("latency_p50_ms", 50.0, False)
LATENCY_P95 = _MetricSpec("latency_p95_ms", 150.0, False)
CACHE_HIT_RATE = _MetricSpec("cache_hit_rate", 0.5, True)
DEGRADED_RATE = _MetricSpec("degraded_rate", 0.01, False)


def percentile(values: Sequence[float], q: float) -> float:
    """Nearest-rank percentile, q in [0, 100]. 0.0 for no values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(q / 100 * len(ordered)))
    return ordered[rank - 1]


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class PerformanceTracker:
    """
    Usage:
        tracker = PerformanceTracker(max_samples=1000)
        tracker.record_request(latency_ms=42.0, cache_hit=False, degraded=False)
        tracker.summarize("1h")
    """

    def __init__(
        self,
        max_samples: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._requests: Deque[_RequestSample] = deque(maxlen=max_samples)
        self._sessions: Deque[_SessionSample] = deque(maxlen=max_samples)
        self._clock = clock
        self._lock = Lock()

    def record_request(self, latency_ms: float, cache_hit: bool, degraded: bool) -> None:
        with self._lock:
            self._requests.append(_RequestSample(self._clock(), latency_ms, cache_hit, degraded))

    def record_session(self, metrics: SessionMetrics, duration_sec: float) -> None:
        with self._lock:
            self._sessions.append(
                _SessionSample(
                    self._clock(),
                    metrics.interaction_rate,
                    metrics.satisfaction_score,
                    duration_sec,
                )
            )

    def summarize(self, timeframe: str, now: Optional[datetime] = None) -> List[PerformanceMetric]:
        """
        Metrics over the timeframe, with a trend against the window before it.

        Raises:
            InvalidInputError: If the timeframe is not one of 1h, 24h, 7d
        """
        window = TIMEFRAMES.get(timeframe)
        if window is None:
            raise InvalidInputError(
                f"Unknown timeframe: {timeframe}",
                {"allowed": sorted(TIMEFRAMES)},
            )
        now = now or self._clock()

        with self._lock:
            requests = list(self._requests)
            sessions = list(self._sessions)

        def split(samples):
            current = [s for s in samples if now - window <= s.timestamp <= now]
            previous = [s for s in samples if now - 2 * window <= s.timestamp < now - window]
            return current, previous

        req_now, req_prev = split(requests)
        ses_now, ses_prev = split(sessions)

        def request_stats(samples):
            latencies = [s.latency_ms for s in samples]
            return {
                LATENCY_P50: percentile(latencies, 50) if samples else None,
                LATENCY_P95: percentile(latencies, 95) if samples else None,
                CACHE_HIT_RATE: _mean([1.0 if s.cache_hit else 0.0 for s in samples]),
                DEGRADED_RATE: _mean([1.0 if s.degraded else 0.0 for s in samples]),
            }

        def session_stats(samples):
            return {
                ENGAGEMENT: _mean([s.engagement for s in samples]),
                SATISFACTION: _mean([s.satisfaction for s in samples]),
                SESSION_DURATION: _mean([s.duration_sec / 60 for s in samples]),
            }

        current = {**session_stats(ses_now), **request_stats(req_now)}
        previous = {**session_stats(ses_prev), **request_stats(req_prev)}

        return [
            PerformanceMetric(
                name=spec.name,
                value=value if value is not None else 0.0,
                target=spec.target,
                trend=_trend(value, previous[spec], spec.higher_is_better),
                timestamp=now,
            )
            for spec, value in current.items()
        ]


def _trend(current: Optional[float], previous: Optional[float], higher_is_better: bool) -> str:
    if current is None or previous is None:
        return "stable"
    baseline = abs(previous) or 1.0
    change = (current - previous) / baseline
    if abs(change) <= TREND_TOLERANCE:
        return "stable"
    improved = change > 0 if higher_is_better else change < 0
    return "improving" if improved else "degrading"
