"""
Feed API router.
Implements GET /v1/feed endpoint with proper error handling and headers.
"""
import hashlib
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status

from feedrank.api.dependencies import get_feed_service
from feedrank.config import get_settings
from feedrank.models.schemas import RankedFeed, RankingOptions
from feedrank.services.feed import FeedService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["feed"])


@router.get(
    "/feed",
    response_model=RankedFeed,
    summary="Get Ranked Feed",
    description="""
    Retrieve a ranked feed page for the specified viewer.

    Items are scored on six factors (relevance, social, freshness, quality,
    diversity, trending) using the viewer's effective weights: experiment
    variant, else live session weights, else profile weights.

    **Features:**
    - Cursor or offset pagination
    - Discovery blending and per-author diversity cap
    - Degrades to stale or popularity-ordered feed when subsystems fail
    - Feature flag controlled with kill switch
    """,
    responses={
        200: {"description": "Ranked feed returned successfully"},
        304: {"description": "Feed not modified"},
        400: {"description": "Malformed request"},
        499: {"description": "Client disconnected"},
    },
)
async def get_feed(
    request: Request,
    response: Response,
    viewer_id: str = Query(..., description="Viewer identifier"),
    limit: Optional[int] = Query(default=None, description="Number of items to return"),
    offset: int = Query(default=0, description="Start position when no cursor is given"),
    cursor: Optional[str] = Query(default=None, description="Pagination cursor from previous response"),
    session_id: Optional[str] = Query(default=None, description="Live session to adapt within"),
    discovery_ratio: Optional[float] = Query(default=None),
    diversity_factor: Optional[float] = Query(default=None),
    max_consecutive_same_author: Optional[int] = Query(default=None),
    debug: bool = Query(default=False, description="Include factor scores and explanations"),
    if_none_match: Optional[str] = Header(
        default=None,
        description="ETag from previous response",
    ),
    feed_service: FeedService = Depends(get_feed_service),
) -> RankedFeed:
    """Main client-facing endpoint for retrieving ranked content."""
    options = RankingOptions(
        limit=limit if limit is not None else get_settings().DEFAULT_FEED_LIMIT,
        offset=offset,
        cursor=cursor,
        discovery_ratio=discovery_ratio,
        diversity_factor=diversity_factor,
        max_consecutive_same_author=max_consecutive_same_author,
        debug=debug,
    )

    feed = await feed_service.rank(
        viewer_id=viewer_id,
        options=options,
        session_id=session_id,
        is_disconnected=request.is_disconnected,
    )

    # -------------------------------------------------------------------------
    # ETag / 304 Logic
    # -------------------------------------------------------------------------
    etag: Optional[str] = None
    if feed.items:
        content_str = "".join(item.item_id for item in feed.items)
        etag_hash = hashlib.md5(content_str.encode()).hexdigest()[:16]
        etag = f'W/"{etag_hash}"'
        response.headers["ETag"] = etag

    if if_none_match and etag and if_none_match == etag:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers={"ETag": etag})

    # -------------------------------------------------------------------------
    # Cache-Control Logic
    # -------------------------------------------------------------------------
    # 1. Degraded: may be a stale per-viewer copy, revalidate every time
    if feed.metadata.degraded:
        response.headers["Cache-Control"] = "private, no-cache"

    # 2. Personalized: private, short TTL
    elif feed.metadata.is_personalized:
        response.headers["Cache-Control"] = "private, max-age=30"
        response.headers["Vary"] = "Authorization"

    # 3. Non-personalized: public, short TTL + SWR
    else:
        response.headers["Cache-Control"] = "public, max-age=30, stale-while-revalidate=15"
        response.headers["Vary"] = "Accept-Encoding"

    response.headers["X-Personalized"] = str(feed.metadata.is_personalized).lower()
    response.headers["X-Degraded"] = str(feed.metadata.degraded).lower()
    response.headers["X-Cache"] = "hit" if feed.metadata.cache_hit else "miss"

    return feed
