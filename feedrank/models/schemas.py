"""
Domain models using Pydantic.
All data structures for the ranking and optimization engine.
"""
import hashlib
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from feedrank.core.exceptions import DataQualityError, InvalidInputError


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Scoring Factors & Weights
# =============================================================================


class Factor(str, Enum):
    """Named scoring factors. Fixed set, every weight vector covers all of them."""

    RELEVANCE = "relevance"
    SOCIAL = "social"
    FRESHNESS = "freshness"
    QUALITY = "quality"
    DIVERSITY = "diversity"
    TRENDING = "trending"


FACTORS: Tuple[Factor, ...] = tuple(Factor)

# Population defaults. The raw split sums to 1.10 and is renormalized.
POPULATION_DEFAULT_WEIGHTS: Dict[Factor, float] = {
    Factor.RELEVANCE: 0.40,
    Factor.SOCIAL: 0.30,
    Factor.FRESHNESS: 0.20,
    Factor.QUALITY: 0.10,
    Factor.DIVERSITY: 0.05,
    Factor.TRENDING: 0.05,
}

FactorMapping = Mapping[Union[Factor, str], float]


class FactorScores(BaseModel):
    """One bounded value per scoring factor."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    social: float = Field(default=0.0, ge=0.0, le=1.0)
    freshness: float = Field(default=0.0, ge=0.0, le=1.0)
    quality: float = Field(default=0.0, ge=0.0, le=1.0)
    diversity: float = Field(default=0.0, ge=0.0, le=1.0)
    trending: float = Field(default=0.0, ge=0.0, le=1.0)

    def get(self, factor: Factor) -> float:
        return getattr(self, factor.value)

    def as_dict(self) -> Dict[Factor, float]:
        return {factor: self.get(factor) for factor in FACTORS}


class ScoringWeights(FactorScores):
    """
    Normalized weight vector: entries in [0,1] summing to 1.

    Construct through `normalized()` when the raw values are not already a
    distribution; direct construction validates the invariant.
    """

    @model_validator(mode="after")
    def _check_normalized(self) -> "ScoringWeights":
        total = sum(self.get(factor) for factor in FACTORS)
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"weights must sum to 1, got {total:.6f}")
        return self

    @classmethod
    def normalized(cls, values: FactorMapping) -> "ScoringWeights":
        """Clamp to >= 0 (NaN/inf => 0) and renormalize to sum 1."""
        cleaned: Dict[Factor, float] = {}
        for factor in FACTORS:
            raw = values.get(factor, values.get(factor.value, 0.0))
            raw = float(raw) if raw is not None else 0.0
            cleaned[factor] = raw if math.isfinite(raw) and raw > 0 else 0.0

        total = sum(cleaned.values())
        if total <= 0:
            return cls.default()
        return cls(**{f.value: min(1.0, v / total) for f, v in cleaned.items()})

    @classmethod
    def default(cls) -> "ScoringWeights":
        """Population-default weights (cold start)."""
        return cls.normalized(POPULATION_DEFAULT_WEIGHTS)

    def with_delta(
        self,
        delta: FactorMapping,
        max_step: Optional[float] = None,
    ) -> "ScoringWeights":
        """Add a (optionally bounded) delta and renormalize."""
        merged: Dict[Factor, float] = {}
        for factor in FACTORS:
            step = delta.get(factor, delta.get(factor.value, 0.0)) or 0.0
            if not math.isfinite(step):
                step = 0.0
            if max_step is not None:
                step = max(-max_step, min(max_step, step))
            merged[factor] = self.get(factor) + step
        return ScoringWeights.normalized(merged)

    def with_factor(self, factor: Factor, value: float) -> "ScoringWeights":
        """Replace one entry and renormalize."""
        values = self.as_dict()
        values[factor] = value
        return ScoringWeights.normalized(values)

    def fingerprint(self) -> str:
        """Short stable hash, used as the weights version in cache keys."""
        encoded = ",".join(f"{self.get(f):.6f}" for f in FACTORS)
        return hashlib.sha1(encoded.encode()).hexdigest()[:12]


class DecayRates(BaseModel):
    """Freshness decay per hour, by content kind."""

    post: float = Field(default=0.08, gt=0)
    reply: float = Field(default=0.12, gt=0)
    repost: float = Field(default=0.10, gt=0)

    def for_kind(self, kind: "ContentKind") -> float:
        return getattr(self, kind.value)


# =============================================================================
# Content & Interactions
# =============================================================================


class ContentKind(str, Enum):
    POST = "post"
    REPLY = "reply"
    REPOST = "repost"


class ContentItem(BaseModel):
    """
    Candidate item, read-only to the engine.
    Supplied by the content store (external).
    """

    id: str = Field(..., min_length=1, description="Unique item identifier")
    author_id: str = Field(..., min_length=1, description="Author identifier")
    created_at: Optional[datetime] = Field(
        default=None,
        description="Creation time. Items without one are rejected at ranking",
    )
    kind: ContentKind = Field(default=ContentKind.POST)
    text: str = Field(default="", description="Raw content, used by the quality floor")
    topics: List[str] = Field(default_factory=list, description="Topic tags")
    likes: int = Field(default=0, ge=0)
    reposts: int = Field(default=0, ge=0)
    replies: int = Field(default=0, ge=0)
    views: int = Field(default=0, ge=0)
    trend_boost: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    embedding: Optional[List[float]] = Field(default=None)

    _normalize_created_at = field_validator("created_at")(_as_utc)

    @property
    def total_engagement(self) -> int:
        return self.likes + self.reposts + self.replies

    def age_hours(self, now: datetime) -> float:
        """
        Age in hours, never negative.

        Raises:
            DataQualityError: If the item has no `created_at`
        """
        if self.created_at is None:
            raise DataQualityError(self.id, "missing created_at")
        return max(0.0, (now - self.created_at).total_seconds() / 3600.0)


class CandidateFilters(BaseModel):
    """Filters passed to the content store."""

    max_age_hours: Optional[float] = Field(default=None, gt=0)
    exclude_item_ids: List[str] = Field(default_factory=list)
    pool_size: int = Field(default=500, ge=1)


class CandidateBatch(BaseModel):
    """Candidate items plus the version of the candidate set they came from."""

    items: List[ContentItem] = Field(default_factory=list)
    version: str = Field(default="0")


class InteractionKind(str, Enum):
    VIEW = "view"
    LIKE = "like"
    SKIP = "skip"
    SHARE = "share"
    HIDE = "hide"


class InteractionEvent(BaseModel):
    """A viewer's reaction to a shown item. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    viewer_id: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)
    kind: InteractionKind
    session_id: str = Field(..., min_length=1)
    time_spent_ms: int = Field(default=0, ge=0, description="Dwell time (views)")
    position: int = Field(default=0, ge=0, description="List position when acted on")
    timestamp: datetime = Field(default_factory=utcnow)
    event_id: Optional[str] = Field(
        default=None,
        description="Delivery id, duplicates within a session are ignored",
    )

    _normalize_timestamp = field_validator("timestamp")(_as_utc)


class NewContentEvent(BaseModel):
    """Content-authoring notification: a new item was published."""

    item_id: str = Field(..., min_length=1)
    author_id: str = Field(..., min_length=1)
    topics: List[str] = Field(default_factory=list)
    trending: bool = Field(default=False)


class TrendUpdate(BaseModel):
    """Trending-source notification: a topic's velocity changed."""

    topic: str = Field(..., min_length=1)
    velocity: float = Field(..., ge=0.0, le=1.0)


# =============================================================================
# Personalization Profile
# =============================================================================


def topic_key(topic: str) -> str:
    """Affinity-map key for a topic."""
    return f"topic:{topic.strip().lower()}"


def author_key(author_id: str) -> str:
    """Affinity-map key for an author."""
    return f"author:{author_id}"


class PersonalizationProfile(BaseModel):
    """
    Per-viewer weights and affinities.
    Immutable; updates produce a new instance with a bumped version.
    """

    model_config = ConfigDict(frozen=True)

    viewer_id: str
    weights: ScoringWeights = Field(default_factory=ScoringWeights.default)
    affinities: Dict[str, float] = Field(
        default_factory=dict,
        description="topic:/author: key -> preference in [0,1]",
    )
    affinity_touched_at: Dict[str, datetime] = Field(default_factory=dict)
    interaction_count: int = Field(default=0, ge=0)
    version: int = Field(default=0, ge=0)
    updated_at: Optional[datetime] = Field(default=None)

    @property
    def is_cold_start(self) -> bool:
        """No personalization history yet."""
        return self.interaction_count == 0 and not self.affinities

    def affinity_for(self, item: ContentItem) -> float:
        """Strongest affinity over the item's topics and author."""
        keys = [topic_key(t) for t in item.topics] + [author_key(item.author_id)]
        return max((self.affinities.get(k, 0.0) for k in keys), default=0.0)

    def top_affinities(self, count: int) -> List[str]:
        """Keys of the strongest affinities."""
        ranked = sorted(self.affinities.items(), key=lambda kv: kv[1], reverse=True)
        return [key for key, _ in ranked[:count]]


# =============================================================================
# Sessions
# =============================================================================


class SessionState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    ENDED = "ended"


class ActionRecord(BaseModel):
    """One entry of a session's bounded action log."""

    kind: InteractionKind
    item_id: str
    timestamp: datetime
    time_spent_ms: int = 0
    position: int = 0
    reward: float = 0.0
    event_id: Optional[str] = None


class SessionMetrics(BaseModel):
    """Rolling engagement metrics over the recent action window."""

    click_through_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    interaction_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    time_per_item_ms: float = Field(default=0.0, ge=0.0)
    satisfaction_score: float = Field(default=0.5, ge=0.0, le=1.0)


class ServedItem(BaseModel):
    """Factor scores of an item shown in this session, kept for attribution."""

    item_id: str
    author_id: str
    topics: List[str] = Field(default_factory=list)
    factor_scores: FactorScores


class Session(BaseModel):
    """Ephemeral single-viewer, single-device unit of activity."""

    session_id: str
    viewer_id: str
    state: SessionState = SessionState.ACTIVE
    started_at: datetime
    last_activity_at: datetime
    actions: List[ActionRecord] = Field(default_factory=list)
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    weights: ScoringWeights
    start_weights: ScoringWeights
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None
    last_weight_shift_at: Optional[datetime] = None
    weight_shifts: int = 0
    served: Dict[str, ServedItem] = Field(default_factory=dict)
    factor_baseline: Optional[FactorScores] = None

    @property
    def duration_sec(self) -> float:
        return max(0.0, (self.last_activity_at - self.started_at).total_seconds())

    def summary(self) -> "SessionSummary":
        return SessionSummary(
            session_id=self.session_id,
            viewer_id=self.viewer_id,
            state=self.state,
            started_at=self.started_at,
            last_activity_at=self.last_activity_at,
            action_count=len(self.actions),
            weight_shifts=self.weight_shifts,
            metrics=self.metrics,
            weights=self.weights,
            experiment_id=self.experiment_id,
            variant_id=self.variant_id,
        )


class SessionSummary(BaseModel):
    """Read-only view of a session for API responses."""

    session_id: str
    viewer_id: str
    state: SessionState
    started_at: datetime
    last_activity_at: datetime
    action_count: int
    weight_shifts: int
    metrics: SessionMetrics
    weights: ScoringWeights
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None


class SessionRecord(BaseModel):
    """Terminal session record flushed to durable storage."""

    session_id: str
    viewer_id: str
    started_at: datetime
    ended_at: datetime
    duration_sec: float
    action_count: int
    metrics: SessionMetrics
    start_weights: ScoringWeights
    terminal_weights: ScoringWeights
    weights_persisted: bool
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None


# =============================================================================
# Experiments
# =============================================================================


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


AveragingMode = Literal["sma", "ema"]


class RunningStat(BaseModel):
    """Streaming mean/variance (Welford) with an exponential moving average."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    ema: Optional[float] = None

    def add(self, value: float, alpha: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)
        self.ema = value if self.ema is None else alpha * value + (1 - alpha) * self.ema

    @property
    def variance(self) -> float:
        return self.m2 / (self.count - 1) if self.count > 1 else 0.0

    def value(self, mode: AveragingMode) -> float:
        if mode == "ema":
            return self.ema if self.ema is not None else 0.0
        return self.mean


class VariantMetrics(BaseModel):
    sessions: int = 0
    engagement: RunningStat = Field(default_factory=RunningStat)
    retention: RunningStat = Field(default_factory=RunningStat)
    satisfaction: RunningStat = Field(default_factory=RunningStat)


class VariantSpec(BaseModel):
    """Variant definition as supplied by the caller."""

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    weights: Dict[str, float] = Field(default_factory=dict, description="Factor -> raw weight")
    capacity: Optional[int] = Field(default=None, description="Max viewers enrolled")


class ExperimentVariant(BaseModel):
    id: str
    name: str
    weights: ScoringWeights
    capacity: Optional[int] = None
    enrolled: int = 0
    metrics: VariantMetrics = Field(default_factory=VariantMetrics)

    @property
    def has_capacity(self) -> bool:
        return self.capacity is None or self.enrolled < self.capacity


class Experiment(BaseModel):
    id: str
    name: str
    description: str = ""
    variants: List[ExperimentVariant]
    sample_size: int
    confidence_level: float
    status: ExperimentStatus = ExperimentStatus.DRAFT
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    enrolled: int = 0

    def variant(self, variant_id: str) -> Optional[ExperimentVariant]:
        return next((v for v in self.variants if v.id == variant_id), None)


class ExperimentCreate(BaseModel):
    """Request body for creating an experiment."""

    name: str = Field(..., min_length=1)
    description: str = ""
    variants: List[VariantSpec]
    sample_size: int
    confidence_level: float
    experiment_id: Optional[str] = None
    start: bool = True


class ExperimentStatusUpdate(BaseModel):
    status: ExperimentStatus


class VariantResult(BaseModel):
    variant_id: str
    name: str
    enrolled: int
    sessions: int
    engagement: float
    retention: float
    satisfaction: float
    engagement_margin: Optional[float] = Field(description="Confidence interval half-width, None below two samples")
    retention_margin: Optional[float]
    satisfaction_margin: Optional[float]


class ExperimentResults(BaseModel):
    experiment_id: str
    status: ExperimentStatus
    sample_size: int
    confidence_level: float
    enrolled: int
    sample_size_reached: bool
    averaging: AveragingMode
    variants: List[VariantResult]
    leading_variant: Optional[str] = None


class VariantAssignment(BaseModel):
    experiment_id: str
    viewer_id: str
    variant_id: str


# =============================================================================
# Ranking
# =============================================================================


class RankingParameters(BaseModel):
    """Engine-level ranking constants (from settings)."""

    max_consecutive_same_author: int = Field(default=2, ge=1)
    discovery_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    min_content_length: int = Field(default=1, ge=0)
    min_engagement: int = Field(default=0, ge=0)
    trend_boost_cap: float = Field(default=0.8, gt=0.0, le=1.0)
    top_affinity_count: int = Field(default=5, ge=1)
    peer_affinity_blend: float = Field(default=0.3, ge=0.0, le=1.0)
    decay_rates: DecayRates = Field(default_factory=DecayRates)
    algorithm_version: str = "hybrid-v1"

    @classmethod
    def from_settings(cls, settings) -> "RankingParameters":
        return cls(
            max_consecutive_same_author=settings.MAX_CONSECUTIVE_SAME_AUTHOR,
            discovery_ratio=settings.DISCOVERY_RATIO,
            min_content_length=settings.MIN_CONTENT_LENGTH,
            min_engagement=settings.MIN_ENGAGEMENT,
            trend_boost_cap=settings.TREND_BOOST_CAP,
            top_affinity_count=settings.TOP_AFFINITY_COUNT,
            peer_affinity_blend=settings.COLLABORATIVE_BLEND,
            decay_rates=DecayRates(
                post=settings.FRESHNESS_DECAY_POST,
                reply=settings.FRESHNESS_DECAY_REPLY,
                repost=settings.FRESHNESS_DECAY_REPOST,
            ),
            algorithm_version=settings.ALGORITHM_VERSION,
        )


class RankingOptions(BaseModel):
    """
    Per-request ranking options.
    Structural errors raise InvalidInputError; they are never clamped.
    """

    limit: int = 20
    offset: int = 0
    cursor: Optional[str] = None
    discovery_ratio: Optional[float] = None
    diversity_factor: Optional[float] = None
    max_consecutive_same_author: Optional[int] = None
    debug: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> "RankingOptions":
        if self.limit < 1:
            raise InvalidInputError("limit must be at least 1", {"limit": self.limit})
        if self.offset < 0:
            raise InvalidInputError("offset must not be negative", {"offset": self.offset})
        for name in ("discovery_ratio", "diversity_factor"):
            value = getattr(self, name)
            if value is not None and not (0.0 <= value <= 1.0):
                raise InvalidInputError(f"{name} must be within [0, 1]", {name: value})
        if self.max_consecutive_same_author is not None and self.max_consecutive_same_author < 1:
            raise InvalidInputError(
                "max_consecutive_same_author must be at least 1",
                {"max_consecutive_same_author": self.max_consecutive_same_author},
            )
        return self

    def cache_fields(self) -> str:
        """Option values that change the ranked output."""
        return (
            f"{self.limit}|{self.offset}|{self.cursor}|{self.discovery_ratio}|"
            f"{self.diversity_factor}|{self.max_consecutive_same_author}"
        )


class RankedResult(BaseModel):
    """Output record per item."""

    item_id: str
    author_id: str
    rank: int = Field(..., ge=1)
    score: float = Field(..., ge=0.0, le=1.0)
    discovery: bool = False
    factor_scores: Optional[FactorScores] = None
    explanations: Optional[List[str]] = None


class FeedMetadata(BaseModel):
    total_score: float = 0.0
    candidate_count: int = 0
    excluded_count: int = 0
    personalized_count: int = 0
    trending_count: int = 0
    discovery_count: int = 0
    diversity_score: float = 0.0
    average_age_hours: float = 0.0
    algorithm_version: str = "hybrid-v1"
    is_personalized: bool = True
    cache_hit: bool = False
    degraded: bool = False
    bypassed: List[str] = Field(default_factory=list, description="Subsystems skipped")
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None
    weights: Optional[ScoringWeights] = None


class RankedFeed(BaseModel):
    items: List[RankedResult] = Field(default_factory=list)
    metadata: FeedMetadata = Field(default_factory=FeedMetadata)
    next_cursor: Optional[str] = None
    has_more: bool = False


# =============================================================================
# Observability
# =============================================================================


Timeframe = Literal["1h", "24h", "7d"]


class PerformanceMetric(BaseModel):
    name: str
    value: float
    target: float
    trend: Literal["improving", "degrading", "stable"]
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: Dict[str, object] = Field(..., description="Error details")


# =============================================================================
# API Request/Response
# =============================================================================


class SessionStart(BaseModel):
    viewer_id: str = Field(..., min_length=1)
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class FeedbackAck(BaseModel):
    accepted: bool = Field(..., description="False when the session queue was full")
    weights: Optional[ScoringWeights] = Field(
        default=None,
        description="Session weights after the event (synchronous mode only)",
    )


class InvalidationResult(BaseModel):
    invalidated: int
