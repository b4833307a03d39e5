"""
Repository interfaces (abstractions).
Using Protocol for structural subtyping (duck typing with type hints).
These define the contracts that external collaborators must follow.
"""
from abc import ABC, abstractmethod
from typing import Optional, Protocol, runtime_checkable

from feedrank.models.schemas import (
    CandidateBatch,
    CandidateFilters,
    ContentItem,
    PersonalizationProfile,
    SessionRecord,
)


@runtime_checkable
class ContentStore(Protocol):
    """
    Source of candidate items.
    Production: indexed post store behind a read replica.
    Testing: In-memory implementation with latency/failure injection.
    """

    async def list_candidate_items(
        self,
        viewer_id: str,
        filters: CandidateFilters,
    ) -> CandidateBatch:
        """
        Fetch the candidate pool for a viewer.

        Args:
            viewer_id: Viewer the feed is built for
            filters: Age/exclusion/pool-size constraints

        Returns:
            CandidateBatch with the items and the candidate-set version
        """
        ...

    async def get_item(self, item_id: str) -> Optional[ContentItem]:
        """Fetch a single item, None if unknown."""
        ...


@runtime_checkable
class TrendingSignalSource(Protocol):
    """Topic velocity feed, values in [0,1]."""

    async def get_trend_velocity(self, topic: str) -> float:
        ...


@runtime_checkable
class ProfileStorage(Protocol):
    """
    Durable storage for personalization profiles.
    The profile store keeps the hot copy in memory and writes through here.
    """

    async def load_profile(self, viewer_id: str) -> Optional[PersonalizationProfile]:
        """
        Load a persisted profile.

        Returns:
            The profile, or None for an unknown viewer
        """
        ...

    async def save_profile(self, profile: PersonalizationProfile) -> None:
        ...


@runtime_checkable
class SessionRecordStorage(Protocol):
    """Sink for terminal session records."""

    async def save_session(self, record: SessionRecord) -> None:
        ...


class FeatureFlagService(ABC):
    """
    Abstract base class for feature flag evaluation.
    Supports kill switch and gradual rollout.
    """

    @abstractmethod
    def is_personalization_enabled(self, viewer_id: str) -> bool:
        """
        Check if personalization is enabled for this viewer.

        Args:
            viewer_id: Viewer identifier for percentage rollout

        Returns:
            True if personalization should be applied
        """
        pass

    @abstractmethod
    def is_kill_switch_active(self) -> bool:
        """
        Check if global kill switch is activated.

        Returns:
            True if all personalization should be disabled
        """
        pass
