"""
Engine context.
Owns every component for the process lifetime and wires them together.
Tests build their own context with injected collaborators.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from feedrank.config import Settings, get_settings
from feedrank.models.interfaces import (
    ContentStore,
    ProfileStorage,
    SessionRecordStorage,
    TrendingSignalSource,
)
from feedrank.models.schemas import RankingParameters, utcnow
from feedrank.repositories.memory import (
    InMemoryContentStore,
    InMemoryProfileStorage,
    InMemorySessionStorage,
    InMemoryTrendingSignalSource,
)
from feedrank.services.collaborative import CollaborativeSignal
from feedrank.services.experiments import ExperimentManager
from feedrank.services.feature_flags import ConfigBasedFeatureFlagService
from feedrank.services.feed import FeedService
from feedrank.services.feed_cache import FeedCache
from feedrank.services.metrics import PerformanceTracker
from feedrank.services.profiles import ProfileStore
from feedrank.services.ranking import RankingEngine
from feedrank.services.sessions import AdaptiveParameters, SessionOptimizer

logger = logging.getLogger(__name__)


class EngineContext:
    """
    Usage:
        context = EngineContext()
        await context.start()
        feed = await context.feed_service.rank("viewer_1")
        await context.aclose()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        content_store: Optional[ContentStore] = None,
        trending_source: Optional[TrendingSignalSource] = None,
        profile_storage: Optional[ProfileStorage] = None,
        session_storage: Optional[SessionRecordStorage] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.content_store = content_store or InMemoryContentStore()
        self.trending_source = trending_source or InMemoryTrendingSignalSource()
        self.profile_storage = profile_storage or InMemoryProfileStorage()
        self.session_storage = session_storage or InMemorySessionStorage()

        self.feature_flags = ConfigBasedFeatureFlagService()
        self.engine = RankingEngine(RankingParameters.from_settings(self.settings))
        self.tracker = PerformanceTracker(self.settings.PERFORMANCE_BUFFER_SIZE, clock=clock)
        self.feed_cache = FeedCache(
            ttl_sec=self.settings.FEED_CACHE_TTL_SEC,
            stale_ttl_sec=self.settings.STALE_FEED_TTL_SEC,
            max_entries=self.settings.FEED_CACHE_MAX_ENTRIES,
        )
        self.collaborative: Optional[CollaborativeSignal] = None
        if self.settings.COLLABORATIVE_ENABLED:
            self.collaborative = CollaborativeSignal(
                max_viewers=self.settings.COLLABORATIVE_MAX_VIEWERS,
                neighbours=self.settings.COLLABORATIVE_NEIGHBOURS,
                min_similarity=self.settings.COLLABORATIVE_MIN_SIMILARITY,
            )
        self.profiles = ProfileStore(self.profile_storage, settings=self.settings, signal=self.collaborative)
        self.experiments = ExperimentManager(
            averaging=self.settings.EXPERIMENT_AVERAGING,
            ema_alpha=self.settings.EXPERIMENT_EMA_ALPHA,
            clock=clock,
        )
        self.sessions = SessionOptimizer(
            profiles=self.profiles,
            content_store=self.content_store,
            record_storage=self.session_storage,
            experiments=self.experiments,
            feed_cache=self.feed_cache,
            engine=self.engine,
            params=AdaptiveParameters.from_settings(self.settings),
            tracker=self.tracker,
            clock=clock,
        )
        self.feed_service = FeedService(
            content_store=self.content_store,
            trending_source=self.trending_source,
            profiles=self.profiles,
            sessions=self.sessions,
            experiments=self.experiments,
            feed_cache=self.feed_cache,
            engine=self.engine,
            feature_flags=self.feature_flags,
            tracker=self.tracker,
            settings=self.settings,
            collaborative=self.collaborative,
        )
        self._reaper: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Launch the session reaper."""
        if self._reaper is None:
            self._reaper = asyncio.get_running_loop().create_task(
                self.sessions.run_reaper(self.settings.SESSION_REAPER_INTERVAL_SEC)
            )

    async def aclose(self) -> None:
        """Stop the reaper, end live sessions and flush background writes."""
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        await self.sessions.close()
        await self.feed_service.drain()
        await self.profiles.close()
        logger.info("Engine context closed")
