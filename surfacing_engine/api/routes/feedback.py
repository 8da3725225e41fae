"""Feedback and user preference endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, status

from surfacing_engine.api.dependencies import get_ingestor
from surfacing_engine.api.schemas import (
    AcceptedResponse,
    FeedbackRequest,
    PreferencesResponse,
    PreferencesUpdate,
)
from surfacing_engine.engine.feedback import FeedbackIngestor

log = logging.getLogger(__name__)
router = APIRouter(tags=["Feedback"])

FEEDBACK_EXAMPLE = {
    "memoryId": "mem_it_007",
    "contextFingerprint": "slack.0123456789abcdef",
    "outcome": "accepted",
}


@router.post(
    "/feedback",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record feedback",
    description=(
        "Queue a user's reaction to a surfaced memory. Processing is asynchronous "
        "and best-effort; invalid events are dropped without an error response. "
        "`userId` may be omitted: it is resolved from the fingerprint the "
        "evaluation returned."
    ),
)
async def record_feedback(
    body: FeedbackRequest = Body(..., examples=[FEEDBACK_EXAMPLE]),
    ingestor: FeedbackIngestor = Depends(get_ingestor),
) -> AcceptedResponse:
    ingestor.submit(body.to_event())
    return AcceptedResponse()


@router.put(
    "/users/{user_id}/preferences",
    response_model=PreferencesResponse,
    summary="Update surfacing preferences",
    responses={422: {"description": "Aggression outside the permitted range"}},
)
async def update_preferences(
    user_id: str,
    body: PreferencesUpdate,
    ingestor: FeedbackIngestor = Depends(get_ingestor),
) -> PreferencesResponse:
    """Adjust how readily memories surface and mute or unmute specific memories."""
    try:
        prefs = ingestor.set_preferences(
            user_id, aggression=body.aggression, mute=body.mute, unmute=body.unmute
        )
    except ValueError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from exc
    return PreferencesResponse(
        user_id=user_id, aggression=prefs.aggression, muted=sorted(prefs.muted)
    )
