"""Services package - business logic layer."""
from .experiments import ExperimentManager
from .feature_flags import ConfigBasedFeatureFlagService
from .feed import FeedService
from .feed_cache import FeedCache, RankingConfigKey
from .metrics import PerformanceTracker
from .profiles import ProfileStore
from .ranking import RankingEngine, ScoringStrategy
from .sessions import AdaptiveParameters, SessionOptimizer

__all__ = [
    "AdaptiveParameters",
    "ConfigBasedFeatureFlagService",
    "ExperimentManager",
    "FeedCache",
    "FeedService",
    "PerformanceTracker",
    "ProfileStore",
    "RankingConfigKey",
    "RankingEngine",
    "ScoringStrategy",
    "SessionOptimizer",
]
