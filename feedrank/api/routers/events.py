"""
Real-time event router.
Content and trending notifications that evict affected cached feeds.
"""
from fastapi import APIRouter, Depends

from feedrank.api.dependencies import get_feed_service
from feedrank.models.schemas import InvalidationResult, NewContentEvent, TrendUpdate
from feedrank.services.feed import FeedService

router = APIRouter(prefix="/v1/events", tags=["events"])


@router.post("/content", response_model=InvalidationResult, summary="New Content Published")
async def new_content(
    event: NewContentEvent,
    feed_service: FeedService = Depends(get_feed_service),
) -> InvalidationResult:
    return InvalidationResult(invalidated=feed_service.handle_new_content(event))


@router.post("/trends", response_model=InvalidationResult, summary="Trend Velocity Update")
async def trend_update(
    event: TrendUpdate,
    feed_service: FeedService = Depends(get_feed_service),
) -> InvalidationResult:
    """Cached feeds showing the topic are evicted once velocity crosses the threshold."""
    return InvalidationResult(invalidated=feed_service.handle_trend_update(event))
