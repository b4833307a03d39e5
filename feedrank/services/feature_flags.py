"""
Feature flag service implementation.
Controls personalization rollout and kill switch.
"""
import hashlib
from typing import Optional

from feedrank.config import get_settings
from feedrank.models.interfaces import FeatureFlagService


class ConfigBasedFeatureFlagService(FeatureFlagService):
    """
    Feature flag service backed by application settings.
    Supports percentage-based rollout using consistent hashing.
    Settings are read on every call so runtime changes apply immediately.
    """

    def __init__(self, rollout_percentage: Optional[float] = None) -> None:
        """
        Initialize feature flag service.

        Args:
            rollout_percentage: Fixed percentage of viewers to enable (0-100);
                None follows ROLLOUT_PERCENTAGE from settings
        """
        self._rollout_override: Optional[float] = None
        if rollout_percentage is not None:
            self.set_rollout_percentage(rollout_percentage)

    @property
    def rollout_percentage(self) -> float:
        if self._rollout_override is not None:
            return self._rollout_override
        return get_settings().ROLLOUT_PERCENTAGE

    def is_personalization_enabled(self, viewer_id: str) -> bool:
        """
        Check if personalization is enabled for this viewer.

        Uses consistent hashing so the same viewer always gets the same
        result (required for experiment consistency).
        """
        settings = get_settings()

        # Global kill switch takes precedence
        if self.is_kill_switch_active():
            return False

        if not settings.PERSONALIZATION_ENABLED:
            return False

        if self.rollout_percentage < 100.0:
            return self.is_viewer_in_rollout(viewer_id, self.rollout_percentage)

        return True

    def is_kill_switch_active(self) -> bool:
        """Check if global kill switch is activated."""
        return get_settings().KILL_SWITCH_ACTIVE

    @staticmethod
    def rollout_bucket(viewer_id: str) -> int:
        """MD5 of the viewer id mod 100."""
        hash_bytes = hashlib.md5(viewer_id.encode()).digest()
        hash_value = int.from_bytes(hash_bytes[:4], byteorder="big")
        return hash_value % 100

    @classmethod
    def is_viewer_in_rollout(cls, viewer_id: str, percentage: float) -> bool:
        return cls.rollout_bucket(viewer_id) < percentage

    def set_rollout_percentage(self, percentage: float) -> None:
        """Pin the rollout percentage (for dynamic configuration)."""
        self._rollout_override = max(0.0, min(100.0, percentage))
