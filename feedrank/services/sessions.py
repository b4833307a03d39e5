"""
Session optimizer.

Each live session is a single-writer actor: a bounded asyncio.Queue drained
by one consumer task. Events are applied in arrival order; the consumer
computes the reward, adapts the session's live weights, nudges the viewer's
affinities and invalidates the viewer's cached feeds.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from feedrank.config import Settings, get_settings
from feedrank.core.cache import InMemoryCache
from feedrank.core.exceptions import (
    DependencyUnavailableError,
    InvalidInputError,
    NotFoundError,
)
from feedrank.core.telemetry import FEEDBACK_EVENTS
from feedrank.models.interfaces import ContentStore, SessionRecordStorage
from feedrank.models.schemas import (
    FACTORS,
    ActionRecord,
    ContentItem,
    Factor,
    FactorScores,
    InteractionEvent,
    InteractionKind,
    ScoringWeights,
    ServedItem,
    Session,
    SessionMetrics,
    SessionRecord,
    SessionState,
    author_key,
    topic_key,
    utcnow,
)
from feedrank.services.experiments import ExperimentManager
from feedrank.services.feed_cache import FeedCache
from feedrank.services.metrics import PerformanceTracker
from feedrank.services.profiles import ProfileStore
from feedrank.services.ranking import RankingEngine

logger = logging.getLogger(__name__)

# Base reward per interaction kind
REWARDS: Dict[InteractionKind, float] = {
    InteractionKind.VIEW: 0.1,
    InteractionKind.LIKE: 1.0,
    InteractionKind.SHARE: 1.5,
    InteractionKind.SKIP: -0.3,
    InteractionKind.HIDE: -1.0,
}
DWELL_BONUS_CAP = 0.5
DWELL_FULL_BONUS_MS = 30_000
# Shrinks with depth: full at slot 0, zero from POSITION_HORIZON down.
# Top slots get interactions regardless of fit, so they carry the discount.
POSITION_PENALTY = 0.05
POSITION_HORIZON = 20

POSITIVE_KINDS = {InteractionKind.LIKE, InteractionKind.SHARE}
NEGATIVE_KINDS = {InteractionKind.SKIP, InteractionKind.HIDE}
MAX_SERVED_SNAPSHOTS = 500


def compute_reward(event: InteractionEvent) -> float:
    """
    Scalar reward in [-1, 1].

    Base value by kind, plus a dwell bonus of up to 0.5 (full at 30s),
    minus a small penalty that is largest at the top of the list.
    """
    reward = REWARDS[event.kind]
    reward += min(event.time_spent_ms / DWELL_FULL_BONUS_MS, DWELL_BONUS_CAP)
    reward -= POSITION_PENALTY * max(0.0, 1.0 - event.position / POSITION_HORIZON)
    return max(-1.0, min(1.0, reward))


def compute_metrics(
    actions: List[ActionRecord],
    window_end: datetime,
    window_sec: float,
) -> SessionMetrics:
    """Engagement metrics over the actions inside the sliding window."""
    recent = [a for a in actions if (window_end - a.timestamp).total_seconds() <= window_sec]
    if not recent:
        return SessionMetrics()

    views = [a for a in recent if a.kind == InteractionKind.VIEW]
    clicks = sum(1 for a in recent if a.kind in POSITIVE_KINDS)
    interactions = sum(
        1 for a in recent if a.kind not in (InteractionKind.VIEW, InteractionKind.SKIP)
    )
    positive = clicks
    negative = sum(1 for a in recent if a.kind in NEGATIVE_KINDS)

    return SessionMetrics(
        click_through_rate=clicks / max(len(views), clicks) if clicks else 0.0,
        interaction_rate=interactions / len(recent),
        time_per_item_ms=sum(a.time_spent_ms for a in views) / len(views) if views else 0.0,
        satisfaction_score=positive / (positive + negative) if positive + negative else 0.5,
    )


# =============================================================================
# Attribution Strategy (Strategy Pattern)
# =============================================================================


class AttributionStrategy(ABC):
    """Splits an item's reward across the scoring factors."""

    @abstractmethod
    def attribute(
        self,
        scores: FactorScores,
        weights: ScoringWeights,
        reference: FactorScores,
    ) -> Dict[Factor, float]:
        """
        Args:
            scores: Factor scores of the acted-on item
            weights: Session weights before the update
            reference: Typical factor scores of what the viewer was shown

        Returns:
            Per-factor relevance in [0,1]; all zeros when nothing is attributable
        """
        pass


class ContrastAttribution(AttributionStrategy):
    """
    Credit the factors on which the acted-on item beat the reference.

    The lift `max(0, score - reference)` is normalized across factors, so a
    like on an item that stands out only by topic match moves relevance and
    nothing else.
    """

    def attribute(
        self,
        scores: FactorScores,
        weights: ScoringWeights,
        reference: FactorScores,
    ) -> Dict[Factor, float]:
        lifts = {f: max(0.0, scores.get(f) - reference.get(f)) for f in FACTORS}
        total = sum(lifts.values())
        if total <= 0:
            return {f: 0.0 for f in FACTORS}
        return {f: lift / total for f, lift in lifts.items()}


class ProportionalAttribution(AttributionStrategy):
    """Each factor's share of the item's final score; ignores the reference."""

    def attribute(
        self,
        scores: FactorScores,
        weights: ScoringWeights,
        reference: FactorScores,
    ) -> Dict[Factor, float]:
        contributions = {f: weights.get(f) * scores.get(f) for f in FACTORS}
        total = sum(contributions.values())
        if total <= 0:
            return {f: 0.0 for f in FACTORS}
        return {f: c / total for f, c in contributions.items()}


def mean_scores(samples: List[FactorScores]) -> FactorScores:
    return FactorScores(**{
        f.value: sum(s.get(f) for s in samples) / len(samples) for f in FACTORS
    })


class AdaptiveParameters(BaseModel):
    """Tuning for online adaptation and the session lifecycle."""

    learning_rate: float = Field(default=0.1, gt=0)
    adaptation_threshold: float = Field(default=0.05, ge=0)
    stability_period_sec: float = Field(default=300.0, ge=0)
    baseline_smoothing: float = Field(default=0.3, gt=0, le=1)
    window_sec: float = Field(default=300.0, gt=0)
    max_actions: int = Field(default=100, ge=1)
    queue_size: int = Field(default=256, ge=1)
    idle_after_sec: float = Field(default=120.0, gt=0)
    session_timeout_sec: float = Field(default=1800.0, gt=0)
    min_session_duration_sec: float = Field(default=30.0, ge=0)
    ended_session_ttl_sec: float = Field(default=3600.0, gt=0)
    content_lookup_timeout_sec: float = Field(default=0.1, gt=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdaptiveParameters":
        return cls(
            learning_rate=settings.LEARNING_RATE,
            adaptation_threshold=settings.ADAPTATION_THRESHOLD,
            stability_period_sec=settings.STABILITY_PERIOD_SEC,
            baseline_smoothing=settings.ATTRIBUTION_BASELINE_SMOOTHING,
            window_sec=settings.METRICS_WINDOW_SEC,
            max_actions=settings.MAX_SESSION_ACTIONS,
            queue_size=settings.SESSION_QUEUE_SIZE,
            idle_after_sec=settings.SESSION_IDLE_AFTER_SEC,
            session_timeout_sec=settings.SESSION_TIMEOUT_SEC,
            min_session_duration_sec=settings.MIN_SESSION_DURATION_SEC,
            ended_session_ttl_sec=settings.ENDED_SESSION_TTL_SEC,
            content_lookup_timeout_sec=settings.CONTENT_LOOKUP_TIMEOUT_MS / 1000,
        )


class _SessionActor:
    """Queue + consumer task owning one session."""

    def __init__(self, session: Session, queue_size: int) -> None:
        self.session = session
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None
        self.closing = False


_STOP = object()


class SessionOptimizer:
    """
    Owns live sessions and adapts their weights from feedback.

    Usage:
        optimizer = SessionOptimizer(profiles, content_store, records, experiments, cache, engine)
        weights = await optimizer.record_feedback(event)
        record = await optimizer.end_session(event.session_id)
    """

    def __init__(
        self,
        profiles: ProfileStore,
        content_store: ContentStore,
        record_storage: SessionRecordStorage,
        experiments: ExperimentManager,
        feed_cache: FeedCache,
        engine: RankingEngine,
        params: Optional[AdaptiveParameters] = None,
        attribution: Optional[AttributionStrategy] = None,
        tracker: Optional[PerformanceTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._profiles = profiles
        self._content_store = content_store
        self._records = record_storage
        self._experiments = experiments
        self._feed_cache = feed_cache
        self._engine = engine
        self._params = params or AdaptiveParameters.from_settings(get_settings())
        self._attribution = attribution or ContrastAttribution()
        self._tracker = tracker
        self._clock = clock

        self._actors: Dict[str, _SessionActor] = {}
        self._ended: InMemoryCache[bool] = InMemoryCache(
            default_ttl_seconds=self._params.ended_session_ttl_sec
        )

    @property
    def active_count(self) -> int:
        return len(self._actors)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        viewer_id: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        """
        Create a session, or return the live one with this id.

        Weights start from the viewer's experiment variant if enrolled,
        otherwise from the viewer's profile.

        Raises:
            InvalidInputError: If the id belongs to an ended session or another viewer
        """
        session_id = session_id or uuid.uuid4().hex
        existing = self._actors.get(session_id)
        if existing is not None:
            if existing.session.viewer_id != viewer_id:
                raise InvalidInputError("Session belongs to another viewer", {"session_id": session_id})
            return existing.session
        if self._ended.get(session_id):
            raise InvalidInputError("Session has ended", {"session_id": session_id})

        now = now or self._clock()
        profile = await self._profiles.get_profile(viewer_id)
        enrollment = self._experiments.resolve_override(viewer_id)
        weights = enrollment.weights if enrollment else profile.weights

        session = Session(
            session_id=session_id,
            viewer_id=viewer_id,
            started_at=now,
            last_activity_at=now,
            weights=weights,
            start_weights=weights,
            experiment_id=enrollment.experiment_id if enrollment else None,
            variant_id=enrollment.variant_id if enrollment else None,
        )
        # Another coroutine may have created it while the profile loaded
        existing = self._actors.get(session_id)
        if existing is not None:
            return existing.session

        actor = _SessionActor(session, self._params.queue_size)
        actor.task = asyncio.get_running_loop().create_task(self._consume(actor))
        self._actors[session_id] = actor
        logger.info(
            "Session started",
            extra={"session_id": session_id, "viewer_id": viewer_id, "experiment_id": session.experiment_id},
        )
        return session

    def get_session(self, session_id: str) -> Session:
        actor = self._actors.get(session_id)
        if actor is None:
            raise NotFoundError("Session", session_id)
        return actor.session

    def find_session(self, session_id: str) -> Optional[Session]:
        actor = self._actors.get(session_id)
        return actor.session if actor and not actor.closing else None

    def is_ended(self, session_id: str) -> bool:
        return bool(self._ended.get(session_id))

    async def end_session(self, session_id: str) -> SessionRecord:
        """
        Drain the session's queue and close it.

        Always stores a terminal record. The learned weight delta is written
        to the profile only for sessions of at least the minimum duration;
        metrics are folded into the experiment when the session had actions.
        """
        actor = self._actors.get(session_id)
        if actor is None or actor.closing:
            raise NotFoundError("Session", session_id)

        actor.closing = True
        await actor.queue.put((_STOP, None))
        if actor.task is not None:
            await actor.task
        self._actors.pop(session_id, None)
        self._ended.set(session_id, True)

        session = actor.session
        session.state = SessionState.ENDED
        duration = session.duration_sec

        persisted = False
        if duration >= self._params.min_session_duration_sec:
            delta = {f: session.weights.get(f) - session.start_weights.get(f) for f in FACTORS}
            try:
                self._profiles.apply_update(session.viewer_id, delta)
                persisted = True
            except DependencyUnavailableError as e:
                logger.warning(f"Session weights not persisted: {e.message}", extra={"session_id": session_id})

        if session.experiment_id and session.variant_id and session.actions:
            self._experiments.record_outcome(
                session.experiment_id,
                session.variant_id,
                session.metrics,
                duration,
            )

        record = SessionRecord(
            session_id=session.session_id,
            viewer_id=session.viewer_id,
            started_at=session.started_at,
            ended_at=session.last_activity_at,
            duration_sec=duration,
            action_count=len(session.actions),
            metrics=session.metrics,
            start_weights=session.start_weights,
            terminal_weights=session.weights,
            weights_persisted=persisted,
            experiment_id=session.experiment_id,
            variant_id=session.variant_id,
        )
        try:
            await self._records.save_session(record)
        except Exception as e:
            logger.error(
                f"Session record storage failed: {type(e).__name__}: {e}",
                extra={"session_id": session_id},
            )

        if self._tracker is not None and session.actions:
            self._tracker.record_session(session.metrics, duration)

        logger.info(
            f"Session ended: actions={len(session.actions)}, duration_sec={duration:.1f}, "
            f"weights_persisted={persisted}",
            extra={"session_id": session_id, "viewer_id": session.viewer_id},
        )
        return record

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Mark inactive sessions idle and end timed-out ones. Returns ended ids."""
        now = now or self._clock()
        ended = []
        for session_id, actor in list(self._actors.items()):
            if actor.closing:
                continue
            inactive = (now - actor.session.last_activity_at).total_seconds()
            if inactive >= self._params.session_timeout_sec:
                await self.end_session(session_id)
                ended.append(session_id)
            elif inactive >= self._params.idle_after_sec and actor.session.state == SessionState.ACTIVE:
                actor.session.state = SessionState.IDLE
        return ended

    async def run_reaper(self, interval_sec: float) -> None:
        """Periodic sweep until cancelled."""
        while True:
            await asyncio.sleep(interval_sec)
            try:
                ended = await self.sweep()
            except Exception:
                logger.exception("Session sweep failed")
                continue
            if ended:
                logger.info(f"Reaper ended {len(ended)} sessions")

    async def close(self) -> None:
        """End every live session."""
        for session_id in list(self._actors):
            if not self._actors[session_id].closing:
                await self.end_session(session_id)

    # -------------------------------------------------------------------------
    # Feedback
    # -------------------------------------------------------------------------

    def record_served(self, session_id: str, items: List[ServedItem]) -> None:
        """Remember factor scores of items shown in this session."""
        actor = self._actors.get(session_id)
        if actor is None:
            return
        served = actor.session.served
        for item in items:
            served.pop(item.item_id, None)
            served[item.item_id] = item
        while len(served) > MAX_SERVED_SNAPSHOTS:
            served.pop(next(iter(served)))

    async def submit_feedback(self, event: InteractionEvent) -> bool:
        """
        Fire-and-forget enqueue. Returns False when the session queue is
        full and the event was dropped.
        """
        actor = await self._actor_for(event)
        try:
            actor.queue.put_nowait((event, None))
        except asyncio.QueueFull:
            FEEDBACK_EVENTS.labels(outcome="dropped").inc()
            logger.warning(
                f"Feedback queue full, dropping {event.kind.value} event",
                extra={"session_id": event.session_id, "viewer_id": event.viewer_id},
            )
            return False
        return True

    async def record_feedback(self, event: InteractionEvent) -> ScoringWeights:
        """Enqueue an event and wait until it is applied; returns the session weights."""
        actor = await self._actor_for(event)
        future = asyncio.get_running_loop().create_future()
        await actor.queue.put((event, future))
        return await future

    async def _actor_for(self, event: InteractionEvent) -> _SessionActor:
        if self._ended.get(event.session_id):
            raise InvalidInputError("Session has ended", {"session_id": event.session_id})
        actor = self._actors.get(event.session_id)
        if actor is None:
            await self.start_session(event.viewer_id, event.session_id, now=event.timestamp)
            actor = self._actors[event.session_id]
        if actor.closing:
            raise InvalidInputError("Session has ended", {"session_id": event.session_id})
        if actor.session.viewer_id != event.viewer_id:
            raise InvalidInputError("Session belongs to another viewer", {"session_id": event.session_id})
        return actor

    async def _consume(self, actor: _SessionActor) -> None:
        while True:
            event, future = await actor.queue.get()
            try:
                if event is _STOP:
                    return
                result = await self._apply(actor.session, event)
            except Exception as e:
                FEEDBACK_EVENTS.labels(outcome="failed").inc()
                logger.exception(
                    f"Feedback processing failed: {type(e).__name__}",
                    extra={"session_id": actor.session.session_id},
                )
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                actor.queue.task_done()

    async def _apply(self, session: Session, event: InteractionEvent) -> ScoringWeights:
        if event.event_id and any(a.event_id == event.event_id for a in session.actions):
            FEEDBACK_EVENTS.labels(outcome="duplicate").inc()
            logger.debug(f"Duplicate event {event.event_id} ignored", extra={"session_id": session.session_id})
            return session.weights

        if session.state == SessionState.IDLE:
            session.state = SessionState.ACTIVE

        reward = compute_reward(event)
        session.actions.append(
            ActionRecord(
                kind=event.kind,
                item_id=event.item_id,
                timestamp=event.timestamp,
                time_spent_ms=event.time_spent_ms,
                position=event.position,
                reward=reward,
                event_id=event.event_id,
            )
        )
        if len(session.actions) > self._params.max_actions:
            del session.actions[: len(session.actions) - self._params.max_actions]

        session.last_activity_at = max(session.last_activity_at, event.timestamp)
        session.metrics = compute_metrics(session.actions, event.timestamp, self._params.window_sec)

        served = session.served.get(event.item_id)
        if served is not None:
            self._update_affinities(
                session.viewer_id, served.author_id, served.topics, reward, event.timestamp
            )
            self._maybe_shift_weights(
                session, event.item_id, served.factor_scores, reward, event.timestamp
            )
        else:
            item = await self._lookup_item(event.item_id)
            if item is not None:
                self._update_affinities(
                    session.viewer_id, item.author_id, item.topics, reward, event.timestamp
                )
                # Rescored after the affinity update so relevance reflects this event
                profile = await self._profiles.get_profile(session.viewer_id)
                scores = self._engine.score_item(item, profile, now=event.timestamp)
                self._maybe_shift_weights(session, item.id, scores, reward, event.timestamp)

        self._feed_cache.invalidate_viewer(session.viewer_id)
        FEEDBACK_EVENTS.labels(outcome="applied").inc()
        return session.weights

    async def _lookup_item(self, item_id: str) -> Optional[ContentItem]:
        try:
            return await asyncio.wait_for(
                self._content_store.get_item(item_id),
                timeout=self._params.content_lookup_timeout_sec,
            )
        except Exception as e:
            logger.warning(f"Content lookup for {item_id} failed: {type(e).__name__}: {e}")
            return None

    def _update_affinities(
        self,
        viewer_id: str,
        author_id: str,
        topics: List[str],
        reward: float,
        now: datetime,
    ) -> None:
        try:
            for topic in topics:
                self._profiles.record_affinity(viewer_id, topic_key(topic), reward, now)
            self._profiles.record_affinity(viewer_id, author_key(author_id), reward, now)
        except DependencyUnavailableError as e:
            logger.warning(f"Affinity update skipped: {e.message}", extra={"viewer_id": viewer_id})

    def _maybe_shift_weights(
        self,
        session: Session,
        item_id: str,
        scores: FactorScores,
        reward: float,
        now: datetime,
    ) -> None:
        reference = self._reference_scores(session, item_id)
        self._track_baseline(session, scores)
        if reference is None:
            return
        if abs(reward) < self._params.adaptation_threshold:
            return
        last = session.last_weight_shift_at
        if last is not None and (now - last).total_seconds() < self._params.stability_period_sec:
            return

        relevance = self._attribution.attribute(scores, session.weights, reference)
        if not any(relevance.values()):
            return
        updated = {
            f: session.weights.get(f) + self._params.learning_rate * reward * relevance[f]
            for f in FACTORS
        }
        session.weights = ScoringWeights.normalized(updated)
        session.last_weight_shift_at = now
        session.weight_shifts += 1
        logger.debug(
            f"Session weights shifted (reward={reward:.2f})",
            extra={"session_id": session.session_id},
        )

    @staticmethod
    def _reference_scores(session: Session, item_id: str) -> Optional[FactorScores]:
        """What the viewer was shown besides this item, else what they acted on so far."""
        others = [s.factor_scores for key, s in session.served.items() if key != item_id]
        if others:
            return mean_scores(others)
        return session.factor_baseline

    def _track_baseline(self, session: Session, scores: FactorScores) -> None:
        baseline = session.factor_baseline
        if baseline is None:
            session.factor_baseline = scores
            return
        alpha = self._params.baseline_smoothing
        session.factor_baseline = FactorScores(**{
            f.value: (1 - alpha) * baseline.get(f) + alpha * scores.get(f) for f in FACTORS
        })
