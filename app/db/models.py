# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌─────────────────┐     ┌──────────────────────────┐     ┌──────────────────┐
# │ moe_experts     │     │ moe_routing_decisions    │     │ moe_feedback     │
# ├─────────────────┤     ├──────────────────────────┤     ├──────────────────┤
# │ name (unique)   │◀────│ selected_expert          │     │ request_id ──────┼─▶ routing
# │ description     │     │ request_id (unique)      │◀────│ expert_name      │
# │ capabilities    │     │ confidence_score         │     │ response_quality │
# │ model_config    │     │ alternative_experts      │     │ response_time_ms │
# │ performance_... │     │ reasoning, query_type    │     │ tokens_used      │
# │ is_active       │     └──────────────────────────┘     │ user_satisfaction│
# └─────────────────┘                                      └──────────────────┘
#
# ┌──────────────────────┐     ┌────────────────────────┐
# │ fallback_responses   │     │ agent_logs             │
# ├──────────────────────┤     ├────────────────────────┤
# │ function_name        │     │ function_name          │
# │ scenario             │     │ status_code            │
# │ response_template    │     │ latency_ms, tokens     │
# │ priority, is_active  │     │ error_message          │
# └──────────────────────┘     └────────────────────────┘
#
# DESIGN DECISION: No foreign keys between routing decisions and feedback.
# request_id is the correlation key; telemetry writes must never fail on a
# missing parent row.
#
# DESIGN DECISION: JSON columns use the JSONB variant on PostgreSQL and
# plain JSON elsewhere, so the same models run against SQLite in tests.
# =============================================================================

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class Expert(Base):
    """
    A specialist handler in the catalog.

    Created by an admin process (or the seed routine). The routing core
    only reads it, except for `performance_score`, which the feedback loop
    rewrites after every execution.
    """

    __tablename__ = "moe_experts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Tags such as ["asset_allocation", "rebalancing"]
    capabilities: Mapped[list | None] = mapped_column(
        JsonColumn, nullable=True, default=list,
    )

    # Opaque execution settings (temperature, max_tokens, response_style).
    # Column is `model_config`; the attribute carries a trailing underscore
    # so it never shadows pydantic's `model_config` in API schemas built
    # with from_attributes.
    model_config_: Mapped[dict | None] = mapped_column(
        "model_config", JsonColumn, nullable=True, default=dict,
    )

    performance_score: Mapped[float] = mapped_column(
        Float, nullable=False, default=50.0,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Expert(name='{self.name}', score={self.performance_score}, "
            f"active={self.is_active})>"
        )


class RoutingDecisionRecord(Base):
    """Audit row for one routing event. Written once, never updated."""

    __tablename__ = "moe_routing_decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    query_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    selected_expert: Mapped[str] = mapped_column(String(100), nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    alternative_experts: Mapped[list | None] = mapped_column(
        JsonColumn, nullable=True, default=list,
    )
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_used: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<RoutingDecisionRecord(request_id='{self.request_id}', "
            f"expert='{self.selected_expert}')>"
        )


class FeedbackRecord(Base):
    """
    Measured quality of one executed command.

    Created right after execution with null quality fields; the
    /feedback endpoint fills them in later.
    """

    __tablename__ = "moe_feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    expert_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # 1–5 ratings, null until judged
    response_quality: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_satisfaction: Mapped[int | None] = mapped_column(Integer, nullable=True)

    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    score_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class FallbackResponse(Base):
    """
    Canned response served when a dependency cannot be reached.

    Looked up by (function_name, scenario); the active row with the
    highest priority wins.
    """

    __tablename__ = "fallback_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    function_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # "circuit_breaker_open", "timeout", "api_error", "default_error"
    scenario: Mapped[str] = mapped_column(String(50), nullable=False)
    response_template: Mapped[dict] = mapped_column(JsonColumn, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AgentLog(Base):
    """Telemetry row: one per routing, execution or dispatch checkpoint."""

    __tablename__ = "agent_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    function_name: Mapped[str] = mapped_column(String(100), nullable=False)
    expert_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    dependency: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    model_used: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JsonColumn, nullable=True, default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AgentLog(function='{self.function_name}', "
            f"status={self.status_code}, latency={self.latency_ms})>"
        )


# Indexes for the lookups the store performs on every request
expert_active_score_idx = Index(
    "idx_expert_active_score",
    Expert.is_active,
    Expert.performance_score,
)

fallback_lookup_idx = Index(
    "idx_fallback_function_scenario",
    FallbackResponse.function_name,
    FallbackResponse.scenario,
)

feedback_expert_created_idx = Index(
    "idx_feedback_expert_created",
    FeedbackRecord.expert_name,
    FeedbackRecord.created_at,
)

agent_log_created_idx = Index(
    "idx_agent_log_function_created",
    AgentLog.function_name,
    AgentLog.created_at,
)
