"""
Centralized configuration using Pydantic BaseSettings.
All environment variables are loaded here - no hardcoded values.
"""
from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # Application
    APP_NAME: str = "Feed Ranking Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ALGORITHM_VERSION: str = "hybrid-v1"

    # Feature Flags
    PERSONALIZATION_ENABLED: bool = True
    KILL_SWITCH_ACTIVE: bool = False

    # Rollout Configuration
    ROLLOUT_PERCENTAGE: float = 100.0  # Percentage of viewers to receive personalized feed

    # Telemetry
    ENABLE_OTEL: bool = False  # Default to False to prevent gRPC errors in dev
    ENABLE_PROMETHEUS: bool = True
    OTEL_EXPORTER_ENDPOINT: Optional[str] = None  # e.g. http://collector:4317

    # Timeouts (milliseconds) - Strict budgets per dependency
    PROFILE_TIMEOUT_MS: int = 100
    CANDIDATE_TIMEOUT_MS: int = 150
    CACHE_TIMEOUT_MS: int = 50
    TRENDING_TIMEOUT_MS: int = 50
    CONTENT_LOOKUP_TIMEOUT_MS: int = 100

    # Circuit Breaker
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT_SEC: int = 30

    # Cache TTLs (seconds)
    FEED_CACHE_TTL_SEC: int = 120  # Freshness scores decay continuously
    STALE_FEED_TTL_SEC: int = 900
    FEED_CACHE_MAX_ENTRIES: int = 10000
    PROFILE_CACHE_TTL_SEC: int = 1800
    ENDED_SESSION_TTL_SEC: int = 3600

    # Pagination
    DEFAULT_FEED_LIMIT: int = 20
    MAX_FEED_LIMIT: int = 50
    CANDIDATE_POOL_SIZE: int = 500
    CANDIDATE_MAX_AGE_HOURS: float = 168.0

    # Ranking
    MAX_CONSECUTIVE_SAME_AUTHOR: int = 2
    DISCOVERY_RATIO: float = 0.1
    MIN_CONTENT_LENGTH: int = 1
    MIN_ENGAGEMENT: int = 0
    TREND_BOOST_CAP: float = 0.8
    TREND_INVALIDATION_VELOCITY: float = 0.7
    TOP_AFFINITY_COUNT: int = 5

    # Co-engagement signal
    COLLABORATIVE_ENABLED: bool = True
    COLLABORATIVE_BLEND: float = 0.3  # Share of the headroom above own affinity peers may fill
    COLLABORATIVE_MAX_VIEWERS: int = 5000
    COLLABORATIVE_NEIGHBOURS: int = 20
    COLLABORATIVE_MIN_SIMILARITY: float = 0.1

    # Freshness decay per hour, by content kind
    FRESHNESS_DECAY_POST: float = 0.08  # 24h old post scores ~0.15
    FRESHNESS_DECAY_REPLY: float = 0.12
    FRESHNESS_DECAY_REPOST: float = 0.10

    # Personalization profile
    MAX_WEIGHT_STEP: float = 0.1
    AFFINITY_LEARNING_RATE: float = 0.3
    AFFINITY_HALF_LIFE_HOURS: float = 72.0
    AFFINITY_FLOOR: float = 0.01
    PROFILE_CAS_RETRIES: int = 5
    PROFILE_REFRESH_TIMEOUT_MS: int = 1000  # Background load from durable storage

    # Session optimizer (adaptive parameters)
    LEARNING_RATE: float = 0.1
    ADAPTATION_THRESHOLD: float = 0.05
    STABILITY_PERIOD_SEC: float = 300.0
    ATTRIBUTION_BASELINE_SMOOTHING: float = 0.3
    METRICS_WINDOW_SEC: float = 300.0
    MAX_SESSION_ACTIONS: int = 100
    SESSION_QUEUE_SIZE: int = 256
    SESSION_IDLE_AFTER_SEC: float = 120.0
    SESSION_TIMEOUT_SEC: float = 1800.0
    MIN_SESSION_DURATION_SEC: float = 30.0
    SESSION_REAPER_INTERVAL_SEC: float = 30.0

    # Experiments
    EXPERIMENT_AVERAGING: Literal["sma", "ema"] = "sma"
    EXPERIMENT_EMA_ALPHA: float = 0.2

    # Performance buffer
    PERFORMANCE_BUFFER_SIZE: int = 1000


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance - singleton pattern."""
    return Settings()
