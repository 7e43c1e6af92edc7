# =============================================================================
# Domain Records — Plain Dataclasses Shared by the Routing Core
# =============================================================================
#
# These are the in-process shapes of the rows the data store persists.
# They are SEPARATE from the ORM models (app/db/models.py) so the router,
# executor and dispatcher can run against the in-memory store in tests
# without SQLAlchemy sessions.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ExpertProfile:
    """
    A named specialist capability.

    `model_config` is forwarded untouched to the expert execution
    capability; the routing core never reads its keys.
    """

    name: str
    description: str = ""
    capabilities: list[str] = field(default_factory=list)
    model_config: dict[str, Any] = field(default_factory=dict)
    performance_score: float = 50.0
    is_active: bool = True


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of one routing event. Immutable once created."""

    request_id: str
    query: str
    selected_expert: str
    confidence_score: float
    alternative_experts: tuple[str, ...] = ()
    reasoning: str = ""
    query_type: str = "general"
    model_used: str | None = None
    user_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class FeedbackEntry:
    """Measured quality of one executed command."""

    request_id: str
    expert_name: str
    response_time_ms: int
    tokens_used: int
    response_quality: int | None = None
    user_satisfaction: int | None = None
    # The measured (unrated) sample was folded into the score at dispatch
    score_applied: bool = False
    id: int | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class TelemetryEvent:
    """One telemetry row (agent log)."""

    function_name: str
    status_code: int
    latency_ms: int
    tokens_used: int = 0
    estimated_cost: float | None = None
    model_used: str | None = None
    expert_used: str | None = None
    dependency: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
