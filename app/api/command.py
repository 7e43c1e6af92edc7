# =============================================================================
# Command API — Voice/Text Command Entry Point
# =============================================================================
#
# POST /command runs one command through the dispatcher
# (route → execute → record) and returns the answer with routing metadata
# and performance figures.
#
# STATUS CODES:
#   200 - answered (live, cached, alternative expert or fallback template)
#   400 - missing/blank query
#   405 - any method other than POST/OPTIONS (FastAPI routing)
#   422 - body is not valid JSON or has wrong types
#   500 - unexpected dispatcher error; structured body with a user-safe
#         fallback_response
#
# OPTIONS /command is answered explicitly so a bare preflight (no
# Origin header) still gets 200 with permissive CORS headers; browser
# preflights are answered earlier by CORSMiddleware.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from app.agents.orchestrator import CommandDispatcher, DispatchResult
from app.api.deps import get_dispatcher
from app.errors import InvalidRequestError
from app.models.requests import CommandRequest
from app.models.responses import (
    CommandErrorResponse,
    CommandResponse,
    PerformanceInfo,
    RoutingInfo,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Commands"])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


# ---------------------------------------------------------------------------
# POST /command - Route and answer a command
# ---------------------------------------------------------------------------


@router.post(
    "/command",
    response_model=CommandResponse,
    responses={500: {"model": CommandErrorResponse}},
    summary="Route a natural-language command to the best expert",
)
async def command_endpoint(
    http_request: Request,
    request: CommandRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """
    Classify the command, run the selected expert with retries and
    circuit breaking, and return the answer.

    A failed expert is retried once on the first alternative before a
    fallback template answers.
    """
    # Picked up by the request telemetry middleware
    http_request.state.telemetry_query = request.query

    try:
        result = await dispatcher.handle(
            request.query or "", request.user_id, request.context,
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if result.is_error:
        body = CommandErrorResponse(
            error=result.error or "internal error",
            request_id=result.request_id,
            fallback_response=result.response,
            performance=_performance(result),
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    return _to_response(result)


# ---------------------------------------------------------------------------
# OPTIONS /command - CORS preflight
# ---------------------------------------------------------------------------


@router.options("/command", include_in_schema=False)
async def command_preflight() -> Response:
    return Response(content="ok", status_code=200, headers=CORS_HEADERS)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _performance(result: DispatchResult) -> PerformanceInfo:
    return PerformanceInfo(
        total_latency_ms=result.total_latency_ms,
        total_tokens=result.total_tokens,
        cost_usd=result.cost_usd,
        model_used=result.model_used,
    )


def _to_response(result: DispatchResult) -> CommandResponse:
    return CommandResponse(
        request_id=result.request_id,
        success=result.success,
        response=result.response,
        expert=result.expert,
        feedback_id=result.feedback_id,
        routing_info=RoutingInfo(
            expert_used=result.expert,
            confidence=result.confidence,
            alternatives=result.alternatives,
            reasoning=result.reasoning,
            query_type=result.query_type,
            fallback_used=result.fallback_used,
            fallback_reason=result.fallback_reason,
            from_cache=result.from_cache,
        ),
        performance=_performance(result),
    )
