# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
# They serve as the contract with the voice/text client:
# 1. Ensure consistent response structure across all endpoints
# 2. Automatically serialized to JSON by FastAPI
# 3. Generate OpenAPI response schemas (visible at /docs)
#
# DESIGN DECISION: Separate response models from domain dataclasses.
# DispatchResult and ExecutionResult are internal; these models decide
# what the client sees (e.g. the error text is only exposed on the
# structured 500 body, never mixed into a successful answer).
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# POST /command
# ---------------------------------------------------------------------------


class RoutingInfo(BaseModel):
    """How the command was routed."""

    expert_used: str | None
    confidence: float | None = Field(description="Router confidence, 0-100")
    alternatives: list[str] = Field(default_factory=list)
    reasoning: str = ""
    query_type: str = "general"
    fallback_used: bool = Field(
        default=False,
        description="True when the first alternative expert answered instead",
    )
    fallback_reason: str | None = None
    from_cache: bool = False


class PerformanceInfo(BaseModel):
    """Measured cost of the command."""

    total_latency_ms: int
    total_tokens: int
    cost_usd: float | None = Field(
        description="Estimated USD cost; 0.0 for free tiers, null when unknown",
    )
    model_used: str | None


class CommandResponse(BaseModel):
    """
    Response for POST /command.

    `success` is False when a fallback template answered because every
    live attempt failed; the request itself still succeeded (HTTP 200).
    """

    request_id: str
    success: bool
    response: str
    expert: str | None
    feedback_id: int | None = None
    routing_info: RoutingInfo
    performance: PerformanceInfo


class CommandErrorResponse(BaseModel):
    """Structured HTTP 500 body when the dispatcher hit an unexpected error."""

    error: str
    request_id: str
    fallback_response: str
    performance: PerformanceInfo


# ---------------------------------------------------------------------------
# POST /resilience
# ---------------------------------------------------------------------------


class ExecutionResponse(BaseModel):
    """Response for POST /resilience - one resilient execution."""

    function: str
    success: bool
    data: Any = None
    from_cache: bool = False
    fallback: bool = False
    reason: str | None = Field(
        default=None,
        description="circuit_breaker_open, timeout, api_error, default_error, cancelled",
    )
    attempts: int
    latency_ms: int


# ---------------------------------------------------------------------------
# POST /feedback/{feedback_id}
# ---------------------------------------------------------------------------


class FeedbackResponse(BaseModel):
    feedback_id: int
    expert_name: str
    response_quality: int | None
    user_satisfaction: int | None
    new_performance_score: float | None = Field(
        description="Expert score after this feedback; null if the expert is gone",
    )


# ---------------------------------------------------------------------------
# GET /health, /health/services, /health/experts
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /health - liveness plus recent success rate."""

    status: str = Field(description="healthy, degraded or unhealthy")
    version: str
    service: str
    window_minutes: int
    total_requests: int
    success_rate: float = Field(description="Percentage of 2xx/3xx telemetry rows")
    avg_latency_ms: float
    checked_at: datetime


class ServiceHealthItem(BaseModel):
    name: str
    status: str
    consecutive_failures: int
    error_rate: float
    avg_latency_ms: float
    circuit_breaker_open: bool
    last_check: datetime | None


class CacheStats(BaseModel):
    entries: int
    hits: int
    misses: int
    hit_rate: float = Field(description="Percentage of lookups served from cache")


class ServiceHealthResponse(BaseModel):
    services: list[ServiceHealthItem]
    cache: CacheStats


class ExpertHealthItem(BaseModel):
    name: str
    performance_score: float
    usage_24h: int
    avg_quality: float | None
    avg_satisfaction: float | None


class ExpertHealthResponse(BaseModel):
    experts: list[ExpertHealthItem]
