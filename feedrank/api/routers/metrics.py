"""
Performance metrics router.
"""
from typing import List

from fastapi import APIRouter, Depends, Query

from feedrank.api.dependencies import get_feed_service
from feedrank.models.schemas import PerformanceMetric
from feedrank.services.feed import FeedService

router = APIRouter(prefix="/v1/metrics", tags=["metrics"])


@router.get(
    "/performance",
    response_model=List[PerformanceMetric],
    summary="Performance Summary",
    responses={400: {"description": "Unknown timeframe"}},
)
async def get_performance(
    timeframe: str = Query(default="1h", description="One of 1h, 24h, 7d"),
    feed_service: FeedService = Depends(get_feed_service),
) -> List[PerformanceMetric]:
    return feed_service.get_performance_metrics(timeframe)
