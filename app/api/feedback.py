# =============================================================================
# Feedback API — User Ratings for Answered Commands
# =============================================================================
#
# Every /command response carries a feedback_id. The client later posts
# 1-5 ratings for quality and satisfaction; the ratings are stored on the
# feedback row and folded into the expert's performance score together
# with the latency and token count measured at dispatch time.
#
# A successful live command already moved the score at dispatch with
# neutral ratings (score_applied on the row), and a re-rated row carries
# its earlier ratings. In both cases the rating revises that contribution
# (PerformanceFeedbackLoop.revise_score) instead of adding a second EMA
# step for the same execution.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_feedback_loop, get_store
from app.models.domain import FeedbackEntry
from app.models.requests import FeedbackRequest
from app.models.responses import FeedbackResponse
from app.services.feedback import FeedbackSample, PerformanceFeedbackLoop
from app.services.store import DataStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Feedback"])


@router.post(
    "/feedback/{feedback_id}",
    response_model=FeedbackResponse,
    summary="Rate the answer to a command",
)
async def submit_feedback(
    feedback_id: int,
    request: FeedbackRequest,
    store: DataStore = Depends(get_store),
    feedback: PerformanceFeedbackLoop = Depends(get_feedback_loop),
) -> FeedbackResponse:
    """
    Store the ratings and update the expert's score.

    Raises:
        HTTPException 400: neither rating was given
        HTTPException 404: unknown feedback_id
    """
    if request.response_quality is None and request.user_satisfaction is None:
        raise HTTPException(
            status_code=400,
            detail="Provide response_quality and/or user_satisfaction.",
        )

    previous = await store.get_feedback_record(feedback_id)
    entry = await store.update_feedback_record(
        feedback_id, request.response_quality, request.user_satisfaction,
    )
    if previous is None or entry is None:
        raise HTTPException(
            status_code=404, detail=f"Feedback {feedback_id} not found.",
        )

    rated = _sample(entry)
    already_applied = (
        previous.score_applied
        or previous.response_quality is not None
        or previous.user_satisfaction is not None
    )
    if already_applied:
        new_score = await feedback.revise_score(
            entry.expert_name, _sample(previous), rated,
        )
    else:
        new_score = await feedback.update_score(entry.expert_name, rated)

    logger.info(
        "Feedback %d recorded for %s (quality=%s, satisfaction=%s)",
        feedback_id, entry.expert_name,
        entry.response_quality, entry.user_satisfaction,
    )

    return FeedbackResponse(
        feedback_id=feedback_id,
        expert_name=entry.expert_name,
        response_quality=entry.response_quality,
        user_satisfaction=entry.user_satisfaction,
        new_performance_score=new_score,
    )


def _sample(entry: FeedbackEntry) -> FeedbackSample:
    return FeedbackSample(
        response_quality=entry.response_quality,
        response_time_ms=entry.response_time_ms,
        tokens_used=entry.tokens_used,
        user_satisfaction=entry.user_satisfaction,
    )
