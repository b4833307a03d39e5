"""
In-memory repository implementations.
Used for prototyping and testing.
Production would replace these with database/stream-backed implementations.
"""
import asyncio
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from feedrank.core.cache import CacheInterface, InMemoryCache
from feedrank.models.schemas import (
    CandidateBatch,
    CandidateFilters,
    ContentItem,
    ContentKind,
    PersonalizationProfile,
    SessionRecord,
    utcnow,
)


class _FaultInjection:
    """Latency and failure knobs shared by the in-memory collaborators."""

    latency_sec: float = 0.0
    failure: Optional[Exception] = None

    async def _simulate_io(self) -> None:
        if self.latency_sec:
            await asyncio.sleep(self.latency_sec)
        if self.failure is not None:
            raise self.failure


class InMemoryContentStore(_FaultInjection):
    """
    In-memory implementation of ContentStore.
    Every mutation bumps the candidate-set version.
    """

    def __init__(self, items: Optional[Iterable[ContentItem]] = None) -> None:
        self._items: Dict[str, ContentItem] = {}
        self._version = 0
        if items is None:
            self._initialize_mock_data()
        else:
            for item in items:
                self._items[item.id] = item

    def _initialize_mock_data(self) -> None:
        """Load mock posts for local runs."""
        now = utcnow()
        hour = timedelta(hours=1)

        mock_items = [
            ContentItem(
                id="p1",
                author_id="alice",
                created_at=now - 2 * hour,
                text="Shipping a new compiler backend today, benchmarks inside",
                topics=["technology", "programming"],
                likes=42, reposts=8, replies=5, views=900,
            ),
            ContentItem(
                id="p2",
                author_id="bob",
                created_at=now - 30 * hour,
                text="That final set was unreal",
                topics=["sports", "tennis"],
                likes=310, reposts=40, replies=61, views=5200,
            ),
            ContentItem(
                id="p3",
                author_id="carol",
                created_at=now - 5 * hour,
                text="Rate cuts are coming sooner than the market thinks",
                topics=["finance"],
                likes=18, reposts=2, replies=9, views=400,
            ),
            ContentItem(
                id="p4",
                author_id="alice",
                created_at=now - 1 * hour,
                kind=ContentKind.REPLY,
                text="Yes, the register allocator was the bottleneck",
                topics=["technology"],
                likes=6, replies=1, views=120,
            ),
            ContentItem(
                id="p5",
                author_id="dave",
                created_at=now - 12 * hour,
                kind=ContentKind.REPOST,
                text="Worth reading twice",
                topics=["science"],
                likes=25, reposts=3, views=600,
                trend_boost=0.4,
            ),
            ContentItem(
                id="p6",
                author_id="erin",
                created_at=now - 3 * hour,
                text="Cat discovered the robot vacuum. Chaos ensued.",
                topics=["animals", "viral"],
                likes=120, reposts=30, replies=14, views=2100,
            ),
            ContentItem(
                id="p7",
                author_id="frank",
                created_at=now - 72 * hour,
                text="Thread on how we scaled our ingest pipeline",
                topics=["technology", "infrastructure"],
                likes=88, reposts=21, replies=12, views=3000,
            ),
            ContentItem(
                id="p8",
                author_id="bob",
                created_at=now - 8 * hour,
                text="Match preview for tomorrow",
                topics=["sports"],
                likes=15, reposts=1, replies=3, views=380,
            ),
        ]
        for item in mock_items:
            self._items[item.id] = item

    @property
    def version(self) -> str:
        return str(self._version)

    def add_item(self, item: ContentItem) -> None:
        """Insert or replace an item."""
        self._items[item.id] = item
        self._version += 1

    def remove_item(self, item_id: str) -> bool:
        removed = self._items.pop(item_id, None) is not None
        if removed:
            self._version += 1
        return removed

    async def list_candidate_items(
        self,
        viewer_id: str,
        filters: CandidateFilters,
    ) -> CandidateBatch:
        """Newest-first candidate pool. Items without a timestamp are passed through."""
        await self._simulate_io()

        now = utcnow()
        excluded = set(filters.exclude_item_ids)
        items: List[ContentItem] = []
        for item in self._items.values():
            if item.id in excluded:
                continue
            if (
                filters.max_age_hours is not None
                and item.created_at is not None
                and item.age_hours(now) > filters.max_age_hours
            ):
                continue
            items.append(item)

        items.sort(
            key=lambda i: i.created_at.timestamp() if i.created_at else 0.0,
            reverse=True,
        )
        return CandidateBatch(items=items[: filters.pool_size], version=self.version)

    async def get_item(self, item_id: str) -> Optional[ContentItem]:
        await self._simulate_io()
        return self._items.get(item_id)


class InMemoryTrendingSignalSource(_FaultInjection):
    """In-memory implementation of TrendingSignalSource."""

    def __init__(self, velocities: Optional[Dict[str, float]] = None) -> None:
        if velocities is None:
            velocities = {"technology": 0.35, "viral": 0.6, "sports": 0.2}
        self._velocities = {topic.lower(): v for topic, v in velocities.items()}

    def set_velocity(self, topic: str, velocity: float) -> None:
        self._velocities[topic.lower()] = max(0.0, min(1.0, velocity))

    async def get_trend_velocity(self, topic: str) -> float:
        await self._simulate_io()
        return self._velocities.get(topic.lower(), 0.0)


class InMemoryProfileStorage(_FaultInjection):
    """
    In-memory implementation of ProfileStorage.
    Simulates the durable profile database.
    """

    def __init__(
        self,
        cache: Optional[CacheInterface[PersonalizationProfile]] = None,
    ) -> None:
        self._cache = cache or InMemoryCache[PersonalizationProfile]()
        self.save_count = 0

    async def load_profile(self, viewer_id: str) -> Optional[PersonalizationProfile]:
        await self._simulate_io()
        return self._cache.get(viewer_id)

    async def save_profile(self, profile: PersonalizationProfile) -> None:
        await self._simulate_io()
        self._cache.set(profile.viewer_id, profile)
        self.save_count += 1


class InMemorySessionStorage(_FaultInjection):
    """In-memory implementation of SessionRecordStorage."""

    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}

    async def save_session(self, record: SessionRecord) -> None:
        await self._simulate_io()
        self._records[record.session_id] = record

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._records.get(session_id)

    def all(self) -> List[SessionRecord]:
        return list(self._records.values())
