"""
Integration tests for Feed API.
"""
from fastapi.testclient import TestClient

from feedrank.config import get_settings


class TestFeedAPI:
    def test_get_feed_personalized(self, test_client: TestClient):
        """Test happy path personalized feed."""
        response = test_client.get("/v1/feed", params={"viewer_id": "viewer_1", "limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert len(data["items"]) == 5
        assert [item["rank"] for item in data["items"]] == [1, 2, 3, 4, 5]
        assert data["metadata"]["is_personalized"] is True
        assert data["metadata"]["degraded"] is False
        assert data["has_more"] is True
        # Breakdown only in debug mode
        assert data["items"][0]["factor_scores"] is None

    def test_default_limit(self, test_client: TestClient):
        response = test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})

        assert response.status_code == 200
        assert len(response.json()["items"]) == 8

    def test_cursor_pagination(self, test_client: TestClient):
        first = test_client.get("/v1/feed", params={"viewer_id": "viewer_1", "limit": 3}).json()
        second = test_client.get(
            "/v1/feed",
            params={"viewer_id": "viewer_1", "limit": 3, "cursor": first["next_cursor"]},
        ).json()

        first_ids = {item["item_id"] for item in first["items"]}
        second_ids = {item["item_id"] for item in second["items"]}
        assert first_ids.isdisjoint(second_ids)
        assert [item["rank"] for item in second["items"]] == [4, 5, 6]

    def test_debug_mode(self, test_client: TestClient):
        response = test_client.get("/v1/feed", params={"viewer_id": "viewer_1", "limit": 2, "debug": True})

        data = response.json()
        scores = data["items"][0]["factor_scores"]
        assert set(scores) >= {"relevance", "social", "freshness", "quality", "diversity", "trending"}
        assert data["metadata"]["weights"] is not None

    def test_invalid_requests(self, test_client: TestClient):
        for params in (
            {"viewer_id": "viewer_1", "limit": 500},
            {"viewer_id": "viewer_1", "limit": 0},
            {"viewer_id": "viewer_1", "offset": -1},
            {"viewer_id": "viewer_1", "cursor": "not-a-cursor"},
            {"viewer_id": "viewer_1", "discovery_ratio": 1.5},
            {"viewer_id": "viewer with spaces"},
        ):
            response = test_client.get("/v1/feed", params=params)
            assert response.status_code == 400, params
            assert response.json()["error"]["code"] == "INVALID_INPUT"

    def test_candidate_source_down(self, test_client: TestClient, mock_content_store):
        """Failing candidate source degrades instead of erroring."""
        mock_content_store.failure = ConnectionError("store down")

        response = test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})

        assert response.status_code == 200
        data = response.json()
        assert data["items"] == []
        assert data["metadata"]["degraded"] is True
        assert data["metadata"]["bypassed"] == ["candidate_source"]
        assert data["metadata"]["is_personalized"] is False

    def test_kill_switch(self, test_client: TestClient):
        """Test global kill switch via settings."""
        settings = get_settings()
        original_value = settings.KILL_SWITCH_ACTIVE
        settings.KILL_SWITCH_ACTIVE = True

        try:
            response = test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})

            assert response.status_code == 200
            data = response.json()
            assert data["metadata"]["is_personalized"] is False
            assert data["metadata"]["degraded"] is False  # Kill switch is intentional, not an error

        finally:
            settings.KILL_SWITCH_ACTIVE = original_value

    def test_session_feed_follows_feedback(self, test_client: TestClient):
        params = {"viewer_id": "viewer_1", "session_id": "s_feed", "debug": True}
        before = test_client.get("/v1/feed", params=params).json()["metadata"]["weights"]

        ack = test_client.post(
            "/v1/feedback",
            params={"wait": True},
            json={"viewer_id": "viewer_1", "session_id": "s_feed", "item_id": "p6", "kind": "like"},
        )

        after = test_client.get("/v1/feed", params=params)
        assert ack.status_code == 200
        assert after.json()["metadata"]["weights"] == ack.json()["weights"]
        assert after.json()["metadata"]["weights"] != before
        assert after.headers["X-Cache"] == "miss"


class TestHealthAPI:
    def test_health(self, test_client: TestClient):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_circuit_breaker_status(self, test_client: TestClient):
        """Test health endpoint shows circuit status."""
        response = test_client.get("/health/ready")
        assert response.status_code == 200
        data = response.json()
        assert {b["name"]: b["state"] for b in data["circuit_breakers"]} == {
            "candidate_source": "closed",
            "ranking_engine": "closed",
        }
        assert data["profile_store"]["degraded"] is False
        assert data["active_sessions"] == 0


class TestEventsAPI:
    def test_new_content_invalidates_author_feeds(self, test_client: TestClient):
        test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})

        response = test_client.post("/v1/events/content", json={"item_id": "p9", "author_id": "alice"})

        assert response.status_code == 200
        assert response.json() == {"invalidated": 1}
        again = test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})
        assert again.headers["X-Cache"] == "miss"

    def test_trend_update_threshold(self, test_client: TestClient):
        test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})

        calm = test_client.post("/v1/events/trends", json={"topic": "viral", "velocity": 0.3})
        spike = test_client.post("/v1/events/trends", json={"topic": "viral", "velocity": 0.95})

        assert calm.json() == {"invalidated": 0}
        assert spike.json() == {"invalidated": 1}

    def test_trend_update_rejects_out_of_range(self, test_client: TestClient):
        response = test_client.post("/v1/events/trends", json={"topic": "viral", "velocity": 3})
        assert response.status_code == 422


class TestMetricsAPI:
    def test_performance_summary(self, test_client: TestClient):
        test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})

        response = test_client.get("/v1/metrics/performance", params={"timeframe": "24h"})

        assert response.status_code == 200
        names = {m["name"] for m in response.json()}
        assert {"latency_p50_ms", "latency_p95_ms", "cache_hit_rate", "engagement_rate"} <= names

    def test_unknown_timeframe(self, test_client: TestClient):
        response = test_client.get("/v1/metrics/performance", params={"timeframe": "30d"})
        assert response.status_code == 400
