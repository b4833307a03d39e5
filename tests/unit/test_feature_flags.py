from unittest.mock import MagicMock, patch

from feedrank.services.feature_flags import ConfigBasedFeatureFlagService


def _settings(kill_switch=False, enabled=True, rollout=100.0):
    mock_settings = MagicMock()
    mock_settings.KILL_SWITCH_ACTIVE = kill_switch
    mock_settings.PERSONALIZATION_ENABLED = enabled
    mock_settings.ROLLOUT_PERCENTAGE = rollout
    return mock_settings


class TestFeatureFlagService:
    @patch("feedrank.services.feature_flags.get_settings")
    def test_personalization_disabled_global(self, mock_get_settings):
        mock_get_settings.return_value = _settings(enabled=False)

        service = ConfigBasedFeatureFlagService()
        assert service.is_personalization_enabled("viewer_1") is False

    @patch("feedrank.services.feature_flags.get_settings")
    def test_kill_switch_active(self, mock_get_settings):
        mock_get_settings.return_value = _settings(kill_switch=True)

        service = ConfigBasedFeatureFlagService()
        assert service.is_kill_switch_active() is True
        assert service.is_personalization_enabled("viewer_1") is False

    @patch("feedrank.services.feature_flags.get_settings")
    def test_internal_rollout_logic(self, mock_get_settings):
        mock_get_settings.return_value = _settings()

        service = ConfigBasedFeatureFlagService(rollout_percentage=0.0)
        assert service.is_personalization_enabled("viewer_1") is False

        service.set_rollout_percentage(100.0)
        assert service.is_personalization_enabled("viewer_1") is True

        service.set_rollout_percentage(250.0)
        assert service.rollout_percentage == 100.0

    @patch("feedrank.services.feature_flags.get_settings")
    def test_rollout_follows_settings(self, mock_get_settings):
        mock_get_settings.return_value = _settings(rollout=50.0)
        service = ConfigBasedFeatureFlagService()

        for i in range(100):
            viewer_id = f"viewer_{i}"
            expected = ConfigBasedFeatureFlagService.rollout_bucket(viewer_id) < 50
            assert service.is_personalization_enabled(viewer_id) is expected

    def test_rollout_bucket_is_stable(self):
        bucket = ConfigBasedFeatureFlagService.rollout_bucket("viewer_1")
        assert 0 <= bucket < 100
        assert ConfigBasedFeatureFlagService.rollout_bucket("viewer_1") == bucket
