"""
Session and feedback router.
"""
from fastapi import APIRouter, Depends, Query, Response, status

from feedrank.api.dependencies import get_feed_service, get_session_optimizer
from feedrank.models.schemas import (
    FeedbackAck,
    InteractionEvent,
    SessionRecord,
    SessionStart,
    SessionSummary,
)
from feedrank.services.feed import FeedService, validate_viewer_id
from feedrank.services.sessions import SessionOptimizer

router = APIRouter(prefix="/v1", tags=["sessions"])


@router.post(
    "/feedback",
    response_model=FeedbackAck,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record Interaction",
    responses={
        400: {"description": "Malformed event or ended session"},
    },
)
async def post_feedback(
    event: InteractionEvent,
    response: Response,
    wait: bool = Query(default=False, description="Wait until applied and return session weights"),
    feed_service: FeedService = Depends(get_feed_service),
) -> FeedbackAck:
    """
    Record a viewer interaction.

    By default the event is queued on the session and applied in order;
    `wait=true` blocks until it has been applied.
    """
    if wait:
        weights = await feed_service.record_feedback(event)
        response.status_code = status.HTTP_200_OK
        return FeedbackAck(accepted=True, weights=weights)

    accepted = await feed_service.submit_feedback(event)
    if not accepted:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return FeedbackAck(accepted=accepted)


@router.post(
    "/sessions",
    response_model=SessionSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Start Session",
)
async def start_session(
    body: SessionStart,
    sessions: SessionOptimizer = Depends(get_session_optimizer),
) -> SessionSummary:
    validate_viewer_id(body.viewer_id)
    session = await sessions.start_session(body.viewer_id, body.session_id)
    return session.summary()


@router.get("/sessions/{session_id}", response_model=SessionSummary, summary="Get Session")
async def get_session(
    session_id: str,
    sessions: SessionOptimizer = Depends(get_session_optimizer),
) -> SessionSummary:
    return sessions.get_session(session_id).summary()


@router.delete("/sessions/{session_id}", response_model=SessionRecord, summary="End Session")
async def end_session(
    session_id: str,
    sessions: SessionOptimizer = Depends(get_session_optimizer),
) -> SessionRecord:
    """Drain pending feedback, persist the learned weights and close the session."""
    return await sessions.end_session(session_id)
