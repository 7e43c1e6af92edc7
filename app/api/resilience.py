# =============================================================================
# Resilience API — Run a Named Dependency Through the Executor
# =============================================================================
#
# POST /resilience exposes the resilience executor directly: cache,
# circuit gate, retries with backoff and fallback templates for any
# dependency the expert executor knows (every catalog expert).
#
# Missing `function` is the only client error (400). Every downstream
# failure comes back as 200 with success=false and fallback=true.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_executor
from app.errors import InvalidRequestError
from app.models.requests import ResilienceRequest
from app.models.responses import ExecutionResponse
from app.services.resilience import ResilienceExecutor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Resilience"])


@router.post(
    "/resilience",
    response_model=ExecutionResponse,
    summary="Execute a dependency with caching, retries and fallback",
)
async def resilience_endpoint(
    request: ResilienceRequest,
    executor: ResilienceExecutor = Depends(get_executor),
) -> ExecutionResponse:
    try:
        result = await executor.execute(
            request.function or "",
            request.payload,
            max_retries=request.options.max_retries,
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return ExecutionResponse(
        function=result.dependency,
        success=result.success,
        data=result.value,
        from_cache=result.from_cache,
        fallback=result.fallback,
        reason=result.reason.value if result.reason else None,
        attempts=result.attempts,
        latency_ms=result.latency_ms,
    )
