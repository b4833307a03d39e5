from fastapi.testclient import TestClient

from feedrank.config.settings import get_settings


def test_cache_headers_personalized(test_client: TestClient):
    """
    Test Cache-Control and ETag for personalized content.
    """
    params = {"viewer_id": "viewer_normal", "limit": 5}
    response = test_client.get("/v1/feed", params=params)
    assert response.status_code == 200

    # Verify Headers
    headers = response.headers
    assert headers["Cache-Control"] == "private, max-age=30"
    assert headers["Vary"] == "Authorization"
    assert headers["X-Personalized"] == "true"
    assert headers["X-Degraded"] == "false"
    assert headers["X-Cache"] == "miss"
    assert headers["ETag"].startswith('W/"')

    etag = headers["ETag"]

    # Test Conditional Request (304)
    resp_304 = test_client.get("/v1/feed", params=params, headers={"If-None-Match": etag})
    assert resp_304.status_code == 304
    assert resp_304.headers["ETag"] == etag

    # Stale validator gets the full page from the feed cache
    resp_200 = test_client.get("/v1/feed", params=params, headers={"If-None-Match": 'W/"0000"'})
    assert resp_200.status_code == 200
    assert resp_200.headers["X-Cache"] == "hit"


def test_cache_headers_fallback(test_client: TestClient):
    """
    Test Cache-Control for non-personalized content.
    We force fallback via rollout.
    """
    settings = get_settings()
    original_percentage = settings.ROLLOUT_PERCENTAGE
    # Force everyone to fallback
    settings.ROLLOUT_PERCENTAGE = 0

    try:
        response = test_client.get("/v1/feed", params={"viewer_id": "viewer_fallback", "limit": 5})
        assert response.status_code == 200
        assert response.json()["metadata"]["is_personalized"] is False

        headers = response.headers
        assert "public" in headers["Cache-Control"]
        assert "stale-while-revalidate" in headers["Cache-Control"]
        # Public cache should NOT vary by viewer
        assert "Authorization" not in headers.get("Vary", "")
        assert headers["X-Personalized"] == "false"

    finally:
        settings.ROLLOUT_PERCENTAGE = original_percentage


def test_cache_headers_degraded(test_client: TestClient, mock_trending_source):
    mock_trending_source.failure = TimeoutError()

    response = test_client.get("/v1/feed", params={"viewer_id": "viewer_1"})

    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "private, no-cache"
    assert response.headers["X-Degraded"] == "true"
    assert response.json()["metadata"]["bypassed"] == ["trending_source"]


def test_empty_feed_has_no_etag(test_client: TestClient, mock_content_store):
    mock_content_store.failure = ConnectionError("store down")

    response = test_client.get("/v1/feed", params={"viewer_id": "viewer_1"}, headers={"If-None-Match": "*"})

    assert response.status_code == 200
    assert "ETag" not in response.headers
