"""Models package - domain entities and interfaces."""
from .interfaces import (
    ContentStore,
    FeatureFlagService,
    ProfileStorage,
    SessionRecordStorage,
    TrendingSignalSource,
)
from .schemas import (
    FACTORS,
    CandidateBatch,
    CandidateFilters,
    ContentItem,
    ContentKind,
    ErrorResponse,
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    Factor,
    FactorScores,
    FeedMetadata,
    InteractionEvent,
    InteractionKind,
    PersonalizationProfile,
    RankedFeed,
    RankedResult,
    RankingOptions,
    ScoringWeights,
    Session,
    SessionMetrics,
    SessionState,
)

__all__ = [
    # Interfaces
    "ContentStore",
    "FeatureFlagService",
    "ProfileStorage",
    "SessionRecordStorage",
    "TrendingSignalSource",
    # Schemas
    "FACTORS",
    "CandidateBatch",
    "CandidateFilters",
    "ContentItem",
    "ContentKind",
    "ErrorResponse",
    "Experiment",
    "ExperimentResults",
    "ExperimentStatus",
    "Factor",
    "FactorScores",
    "FeedMetadata",
    "InteractionEvent",
    "InteractionKind",
    "PersonalizationProfile",
    "RankedFeed",
    "RankedResult",
    "RankingOptions",
    "ScoringWeights",
    "Session",
    "SessionMetrics",
    "SessionState",
]
