"""
Pytest configuration and fixtures.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from feedrank.api.dependencies import get_engine_context
from feedrank.config import Settings
from feedrank.context import EngineContext
from feedrank.main import app
from feedrank.models.schemas import ContentItem, PersonalizationProfile
from feedrank.repositories.memory import (
    InMemoryContentStore,
    InMemoryProfileStorage,
    InMemorySessionStorage,
    InMemoryTrendingSignalSource,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    """Fixed reference time."""
    return NOW


@pytest.fixture
def make_item(now):
    """Factory for content items aged relative to `now`."""

    def factory(item_id, author_id="author", age_hours=1.0, **fields):
        fields.setdefault("text", "A reasonably written post about something")
        return ContentItem(
            id=item_id,
            author_id=author_id,
            created_at=now - timedelta(hours=age_hours),
            **fields,
        )

    return factory


@pytest.fixture
def cold_profile():
    return PersonalizationProfile(viewer_id="viewer_cold")


@pytest.fixture
def mock_content_store():
    """Fixture for the in-memory content store (mock posts)."""
    return InMemoryContentStore()


@pytest.fixture
def mock_trending_source():
    return InMemoryTrendingSignalSource()


@pytest.fixture
def mock_profile_storage():
    return InMemoryProfileStorage()


@pytest.fixture
def mock_session_storage():
    return InMemorySessionStorage()


@pytest.fixture
def engine_context(
    mock_content_store,
    mock_trending_source,
    mock_profile_storage,
    mock_session_storage,
):
    """Engine context over in-memory collaborators."""
    return EngineContext(
        settings=Settings(),
        content_store=mock_content_store,
        trending_source=mock_trending_source,
        profile_storage=mock_profile_storage,
        session_storage=mock_session_storage,
    )


@pytest.fixture
def test_client(engine_context):
    """
    TestClient fixture with dependency overrides.
    Uses an isolated engine context per test.
    """
    app.dependency_overrides[get_engine_context] = lambda: engine_context

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
