"""
Feed service - main business logic orchestrator.
Coordinates feature flags, concurrent data fetching, experiments, sessions,
the feed cache and the ranking engine behind circuit breakers.
Implements graceful degradation: a failing subsystem is bypassed, never fatal.
"""
import asyncio
import logging
import random
import re
import time
from datetime import datetime
from typing import Awaitable, Callable, Coroutine, Dict, List, Optional, Sequence, Set, Tuple

from feedrank.config import Settings, get_settings
from feedrank.core.circuit_breaker import CircuitBreaker
from feedrank.core.exceptions import (
    DependencyUnavailableError,
    InvalidInputError,
    RequestCancelledError,
)
from feedrank.core.telemetry import (
    DEGRADED_EVENTS,
    FEED_CACHE_LOOKUPS,
    RANKING_LATENCY,
    tracer,
)
from feedrank.models.interfaces import ContentStore, FeatureFlagService, TrendingSignalSource
from feedrank.models.schemas import (
    CandidateBatch,
    CandidateFilters,
    ContentItem,
    FeedMetadata,
    InteractionEvent,
    NewContentEvent,
    PerformanceMetric,
    PersonalizationProfile,
    RankedFeed,
    RankingOptions,
    ScoringWeights,
    ServedItem,
    Session,
    TrendUpdate,
    utcnow,
)
from feedrank.services.collaborative import CollaborativeSignal
from feedrank.services.experiments import Enrollment, ExperimentManager
from feedrank.services.feed_cache import FeedCache, RankingConfigKey
from feedrank.services.metrics import PerformanceTracker
from feedrank.services.profiles import ProfileStore
from feedrank.services.ranking import RankingEngine
from feedrank.services.sessions import SessionOptimizer

logger = logging.getLogger(__name__)

VIEWER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")

DisconnectCheck = Callable[[], Awaitable[bool]]


def validate_viewer_id(viewer_id: str) -> None:
    if not isinstance(viewer_id, str) or not VIEWER_ID_PATTERN.match(viewer_id):
        raise InvalidInputError("Malformed viewer id", {"viewer_id": viewer_id})


class FeedService:
    """
    Main feed service orchestrating the personalization flow.

    Responsibilities:
    - Check feature flags
    - Fetch profile and candidates concurrently under timeouts
    - Resolve experiment / session / profile weights
    - Serve from the feed cache or rank through the circuit breaker
    - Handle graceful degradation
    """

    def __init__(
        self,
        content_store: ContentStore,
        trending_source: TrendingSignalSource,
        profiles: ProfileStore,
        sessions: SessionOptimizer,
        experiments: ExperimentManager,
        feed_cache: FeedCache,
        engine: RankingEngine,
        feature_flags: FeatureFlagService,
        tracker: PerformanceTracker,
        candidate_breaker: Optional[CircuitBreaker] = None,
        ranking_breaker: Optional[CircuitBreaker] = None,
        settings: Optional[Settings] = None,
        collaborative: Optional[CollaborativeSignal] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._collaborative = collaborative
        self._content_store = content_store
        self._trending = trending_source
        self._profiles = profiles
        self._sessions = sessions
        self._experiments = experiments
        self._feed_cache = feed_cache
        self._engine = engine
        self._feature_flags = feature_flags
        self._tracker = tracker
        self._candidate_breaker = candidate_breaker or CircuitBreaker(
            name="candidate_source",
            failure_threshold=self._settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            recovery_timeout_sec=self._settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT_SEC,
        )
        self._ranking_breaker = ranking_breaker or CircuitBreaker(
            name="ranking_engine",
            failure_threshold=self._settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            recovery_timeout_sec=self._settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT_SEC,
        )
        self._tasks: Set[asyncio.Task] = set()

    @property
    def breakers(self) -> Tuple[CircuitBreaker, CircuitBreaker]:
        return self._candidate_breaker, self._ranking_breaker

    # -------------------------------------------------------------------------
    # Ranking
    # -------------------------------------------------------------------------

    async def rank(
        self,
        viewer_id: str,
        options: Optional[RankingOptions] = None,
        session_id: Optional[str] = None,
        is_disconnected: Optional[DisconnectCheck] = None,
        now: Optional[datetime] = None,
    ) -> RankedFeed:
        """
        Get a ranked feed page for a viewer.

        Args:
            viewer_id: Viewer identifier
            options: Paging and tuning options
            session_id: Live session whose adapted weights apply
            is_disconnected: Async check for client disconnect
            now: Reference time (default: current time)

        Returns:
            RankedFeed, possibly degraded but never an error for dependency failures

        Raises:
            InvalidInputError: Malformed request
            RequestCancelledError: Client went away mid-request
        """
        options = options or RankingOptions(limit=self._settings.DEFAULT_FEED_LIMIT)
        self._validate_request(viewer_id, options)

        start_time = time.perf_counter()
        with tracer.start_as_current_span("feed.rank") as span:
            feed = await self._rank(viewer_id, options, session_id, is_disconnected, now or utcnow())
            span.set_attribute("feedrank.degraded", feed.metadata.degraded)

        elapsed = time.perf_counter() - start_time
        RANKING_LATENCY.observe(elapsed)
        self._tracker.record_request(elapsed * 1000, feed.metadata.cache_hit, feed.metadata.degraded)
        logger.info(
            f"Feed served: items={len(feed.items)}, personalized={feed.metadata.is_personalized}, "
            f"cache_hit={feed.metadata.cache_hit}, degraded={feed.metadata.degraded}, "
            f"elapsed_ms={elapsed * 1000:.2f}",
            extra={"viewer_id": viewer_id, "session_id": session_id},
        )
        return feed

    def _validate_request(self, viewer_id: str, options: RankingOptions) -> None:
        validate_viewer_id(viewer_id)
        if options.limit > self._settings.MAX_FEED_LIMIT:
            raise InvalidInputError(
                f"limit must be between 1 and {self._settings.MAX_FEED_LIMIT}",
                {"limit": options.limit},
            )
        if options.cursor:
            self._engine.decode_cursor(options.cursor)

    async def _rank(
        self,
        viewer_id: str,
        options: RankingOptions,
        session_id: Optional[str],
        is_disconnected: Optional[DisconnectCheck],
        now: datetime,
    ) -> RankedFeed:
        bypassed: List[str] = []
        personalized = self._feature_flags.is_personalization_enabled(viewer_id)
        if not personalized:
            logger.info("Personalization disabled for viewer", extra={"viewer_id": viewer_id})

        await self._check_cancelled(is_disconnected, "data_fetch")

        # Step 1: Profile and candidates in parallel
        profile_result, candidate_result = await asyncio.gather(
            self._load_profile(viewer_id, personalized),
            self._load_candidates(viewer_id),
            return_exceptions=True,
        )

        if isinstance(profile_result, DependencyUnavailableError):
            self._bypass(bypassed, profile_result, viewer_id)
            profile = PersonalizationProfile(viewer_id=viewer_id)
        elif isinstance(profile_result, BaseException):
            raise profile_result
        else:
            profile = profile_result
            if personalized and self._profiles.is_degraded:
                self._bypass(bypassed, DependencyUnavailableError("profile_store", "durable store failing"), viewer_id)

        if isinstance(candidate_result, DependencyUnavailableError):
            self._bypass(bypassed, candidate_result, viewer_id)
            return self._degraded_feed(viewer_id, bypassed)
        if isinstance(candidate_result, BaseException):
            raise candidate_result
        batch: CandidateBatch = candidate_result

        await self._check_cancelled(is_disconnected, "weight_resolution")

        # Step 2: Effective weights
        weights, enrollment, session = await self._resolve_weights(
            viewer_id, profile, personalized, session_id
        )
        variant_id = enrollment.variant_id if enrollment else None
        config_hash = RankingConfigKey.build(weights, variant_id, batch.version, options, personalized)

        # Step 3: Feed cache
        cache_ok = True
        cached: Optional[RankedFeed] = None
        try:
            cached = await asyncio.wait_for(
                self._feed_cache.get(viewer_id, config_hash),
                timeout=self._settings.CACHE_TIMEOUT_MS / 1000,
            )
        except Exception as e:
            cache_ok = False
            self._bypass(bypassed, DependencyUnavailableError("feed_cache", type(e).__name__), viewer_id)

        if cached is not None:
            FEED_CACHE_LOOKUPS.labels(outcome="hit").inc()
            feed = cached.model_copy(deep=True)
            feed.metadata.cache_hit = True
        else:
            FEED_CACHE_LOOKUPS.labels(outcome="miss" if cache_ok else "error").inc()
            await self._check_cancelled(is_disconnected, "ranking")

            # Step 4: Trending signals (optional)
            try:
                trends = await self._load_trends(batch.items)
            except DependencyUnavailableError as e:
                self._bypass(bypassed, e, viewer_id)
                trends = {}

            peers = self._peer_affinities(profile, personalized, bypassed)

            # Step 5: Rank through circuit breaker
            def popularity_fallback() -> RankedFeed:
                self._bypass(bypassed, DependencyUnavailableError("ranking_engine", "breaker fallback"), viewer_id)
                return self._engine.popularity_order(batch.items, options)

            feed = self._ranking_breaker.call(
                func=lambda: self._engine.rank(
                    candidates=batch.items,
                    profile=profile,
                    weights=weights,
                    options=options,
                    trend_signals=trends,
                    now=now,
                    rng=random.Random(f"{viewer_id}:{batch.version}"),
                    peer_affinities=peers,
                ),
                fallback=popularity_fallback,
            )
            feed.metadata.is_personalized = personalized and "ranking_engine" not in bypassed

            if cache_ok and "ranking_engine" not in bypassed:
                topics = self._page_topics(feed, batch.items)
                self._spawn(self._feed_cache.put(viewer_id, config_hash, feed.model_copy(deep=True), topics=topics))

        if session is not None:
            self._sessions.record_served(session.session_id, self._served_items(feed, batch.items))

        feed.metadata.experiment_id = enrollment.experiment_id if enrollment else None
        feed.metadata.variant_id = variant_id
        return self._finalize(feed, bypassed, options.debug)

    async def _load_profile(self, viewer_id: str, personalized: bool) -> PersonalizationProfile:
        if not personalized:
            return PersonalizationProfile(viewer_id=viewer_id)
        try:
            return await asyncio.wait_for(
                self._profiles.get_profile(viewer_id),
                timeout=self._settings.PROFILE_TIMEOUT_MS / 1000,
            )
        except Exception as e:
            raise DependencyUnavailableError("profile_store", type(e).__name__) from e

    def _peer_affinities(
        self,
        profile: PersonalizationProfile,
        personalized: bool,
        bypassed: List[str],
    ) -> Dict[str, float]:
        """What similar viewers (or, for a cold viewer, everyone) engage with."""
        if self._collaborative is None or not personalized or "profile_store" in bypassed:
            return {}
        return self._collaborative.peer_affinities(profile)

    async def _load_candidates(self, viewer_id: str) -> CandidateBatch:
        filters = CandidateFilters(
            max_age_hours=self._settings.CANDIDATE_MAX_AGE_HOURS,
            pool_size=self._settings.CANDIDATE_POOL_SIZE,
        )
        try:
            return await self._candidate_breaker.call_async(
                lambda: asyncio.wait_for(
                    self._content_store.list_candidate_items(viewer_id, filters),
                    timeout=self._settings.CANDIDATE_TIMEOUT_MS / 1000,
                )
            )
        except Exception as e:
            raise DependencyUnavailableError("candidate_source", type(e).__name__) from e

    async def _load_trends(self, items: Sequence[ContentItem]) -> Dict[str, float]:
        topics = sorted({topic.lower() for item in items for topic in item.topics})
        if not topics:
            return {}
        try:
            velocities = await asyncio.wait_for(
                asyncio.gather(*(self._trending.get_trend_velocity(t) for t in topics)),
                timeout=self._settings.TRENDING_TIMEOUT_MS / 1000,
            )
        except Exception as e:
            raise DependencyUnavailableError("trending_source", type(e).__name__) from e
        return dict(zip(topics, velocities))

    async def _resolve_weights(
        self,
        viewer_id: str,
        profile: PersonalizationProfile,
        personalized: bool,
        session_id: Optional[str],
    ) -> Tuple[ScoringWeights, Optional[Enrollment], Optional[Session]]:
        """Experiment override, else session weights, else profile weights."""
        if not personalized:
            return ScoringWeights.default(), None, None

        session = None
        if session_id:
            session = self._sessions.find_session(session_id)
            if session is None and not self._sessions.is_ended(session_id):
                session = await self._sessions.start_session(viewer_id, session_id)
            if session is not None and session.viewer_id != viewer_id:
                raise InvalidInputError("Session belongs to another viewer", {"session_id": session_id})

        enrollment = self._experiments.resolve_override(viewer_id)
        if enrollment is not None:
            return enrollment.weights, enrollment, session
        if session is not None:
            return session.weights, None, session
        return profile.weights, None, None

    # -------------------------------------------------------------------------
    # Degradation helpers
    # -------------------------------------------------------------------------

    def _bypass(self, bypassed: List[str], error: DependencyUnavailableError, viewer_id: str) -> None:
        if error.subsystem in bypassed:
            return
        bypassed.append(error.subsystem)
        DEGRADED_EVENTS.labels(subsystem=error.subsystem).inc()
        logger.warning(f"Bypassing subsystem: {error.message}", extra={"viewer_id": viewer_id})

    def _degraded_feed(self, viewer_id: str, bypassed: List[str]) -> RankedFeed:
        """Stale copy when one exists, otherwise an empty degraded page."""
        stale = self._feed_cache.get_stale(viewer_id)
        if stale is not None:
            logger.info("Serving stale feed", extra={"viewer_id": viewer_id})
            feed = stale.model_copy(deep=True)
            feed.next_cursor = None
            feed.has_more = False
        else:
            feed = RankedFeed(
                metadata=FeedMetadata(algorithm_version=self._engine.params.algorithm_version)
            )
        feed.metadata.is_personalized = False
        feed.metadata.experiment_id = None
        feed.metadata.variant_id = None
        return self._finalize(feed, bypassed, debug=False)

    @staticmethod
    def _finalize(feed: RankedFeed, bypassed: List[str], debug: bool) -> RankedFeed:
        feed.metadata.bypassed = list(bypassed)
        feed.metadata.degraded = bool(bypassed)
        if not debug:
            feed.metadata.weights = None
            feed.items = [
                item.model_copy(update={"factor_scores": None, "explanations": None})
                for item in feed.items
            ]
        return feed

    @staticmethod
    def _page_topics(feed: RankedFeed, items: Sequence[ContentItem]) -> List[str]:
        by_id = {item.id: item for item in items}
        topics: Set[str] = set()
        for result in feed.items:
            item = by_id.get(result.item_id)
            if item is not None:
                topics.update(item.topics)
        return sorted(topics)

    @staticmethod
    def _served_items(feed: RankedFeed, items: Sequence[ContentItem]) -> List[ServedItem]:
        by_id = {item.id: item for item in items}
        served = []
        for result in feed.items:
            item = by_id.get(result.item_id)
            if item is None or result.factor_scores is None:
                continue
            served.append(
                ServedItem(
                    item_id=item.id,
                    author_id=item.author_id,
                    topics=item.topics,
                    factor_scores=result.factor_scores,
                )
            )
        return served

    @staticmethod
    async def _check_cancelled(is_disconnected: Optional[DisconnectCheck], stage: str) -> None:
        if is_disconnected is not None and await is_disconnected():
            raise RequestCancelledError(stage)

    # -------------------------------------------------------------------------
    # Feedback & observability
    # -------------------------------------------------------------------------

    async def submit_feedback(self, event: InteractionEvent) -> bool:
        """Fire-and-forget feedback; False if the event was dropped."""
        validate_viewer_id(event.viewer_id)
        return await self._sessions.submit_feedback(event)

    async def record_feedback(self, event: InteractionEvent) -> ScoringWeights:
        """Apply feedback and wait for the session's updated weights."""
        validate_viewer_id(event.viewer_id)
        return await self._sessions.record_feedback(event)

    def get_performance_metrics(self, timeframe: str) -> List[PerformanceMetric]:
        return self._tracker.summarize(timeframe)

    # -------------------------------------------------------------------------
    # Real-time events
    # -------------------------------------------------------------------------

    def handle_new_content(self, event: NewContentEvent) -> int:
        """Evict cached feeds that showed this author (and topics, if trending)."""
        removed = self._feed_cache.invalidate_author(event.author_id)
        if event.trending:
            for topic in event.topics:
                removed += self._feed_cache.invalidate_topic(topic)
        logger.info(f"New content {event.item_id}: invalidated {removed} cached feeds")
        return removed

    def handle_trend_update(self, event: TrendUpdate) -> int:
        """Evict feeds showing a topic whose velocity crossed the threshold."""
        if event.velocity < self._settings.TREND_INVALIDATION_VELOCITY:
            return 0
        removed = self._feed_cache.invalidate_topic(event.topic)
        logger.info(f"Trend spike on {event.topic}: invalidated {removed} cached feeds")
        return removed

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background cache write failed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for in-flight cache writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
