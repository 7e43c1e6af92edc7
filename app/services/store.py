# =============================================================================
# Data Store Abstraction — Pluggable Persistence Protocol
# =============================================================================
#
# Provides the narrow CRUD surface the routing core needs: the expert
# catalog, routing audit rows, feedback rows, fallback templates and
# telemetry rows.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Same pattern as the LLM providers in llm.py - any class with the right
# methods works, and test doubles need no inheritance.
#
# DESIGN DECISION: Two implementations.
#   - SqlDataStore: SQLAlchemy async ORM (PostgreSQL in production, SQLite
#     via aiosqlite for local runs and tests)
#   - InMemoryDataStore: process-local dicts and lists. Used when
#     DATASTORE_TYPE=memory and by the unit tests, which assert telemetry
#     and feedback rows without mocking a database.
#
# ARCHITECTURE:
#   DataStore (Protocol)
#   ├── InMemoryDataStore
#   ├── SqlDataStore        - one session per operation (session_scope)
#   └── build_data_store()  - factory, reads datastore_type from config
# =============================================================================

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.db.engine import session_scope
from app.db.models import (
    AgentLog,
    Expert,
    FallbackResponse,
    FeedbackRecord,
    RoutingDecisionRecord,
)
from app.models.domain import (
    ExpertProfile,
    FeedbackEntry,
    RoutingDecision,
    TelemetryEvent,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class DataStore(Protocol):
    """Persistence interface consumed by the router, executor and dispatcher."""

    async def get_active_experts(self) -> list[ExpertProfile]:
        """Active experts, highest performance_score first."""
        ...

    async def get_expert(self, name: str) -> ExpertProfile | None: ...

    async def update_expert_score(self, name: str, score: float) -> None: ...

    async def upsert_expert(self, expert: ExpertProfile) -> None: ...

    async def insert_routing_decision(self, decision: RoutingDecision) -> None: ...

    async def insert_feedback_record(self, entry: FeedbackEntry) -> int:
        """Persist a feedback row and return its id."""
        ...

    async def get_feedback_record(self, feedback_id: int) -> FeedbackEntry | None: ...

    async def update_feedback_record(
        self,
        feedback_id: int,
        response_quality: int | None,
        user_satisfaction: int | None,
    ) -> FeedbackEntry | None: ...

    async def list_feedback(self, since: datetime) -> list[FeedbackEntry]: ...

    async def get_fallback_response(
        self, function_name: str, scenario: str,
    ) -> dict[str, Any] | None:
        """Highest-priority active template, or None when not configured."""
        ...

    async def upsert_fallback_response(
        self,
        function_name: str,
        scenario: str,
        template: dict[str, Any],
        priority: int = 0,
    ) -> None: ...

    async def insert_agent_log(self, event: TelemetryEvent) -> None: ...

    async def list_agent_logs(self, since: datetime) -> list[TelemetryEvent]: ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


class InMemoryDataStore:
    """
    Process-local store.

    Returns copies of stored records so callers cannot mutate state
    behind the store's back.
    """

    def __init__(self, experts: list[ExpertProfile] | None = None) -> None:
        self._experts: dict[str, ExpertProfile] = {}
        self.routing_decisions: list[RoutingDecision] = []
        self.feedback: dict[int, FeedbackEntry] = {}
        self.agent_logs: list[TelemetryEvent] = []
        self._fallbacks: dict[tuple[str, str], list[tuple[int, dict]]] = {}
        self._next_feedback_id = 1

        for expert in experts or []:
            self._experts[expert.name] = replace(expert)

    async def get_active_experts(self) -> list[ExpertProfile]:
        active = [replace(e) for e in self._experts.values() if e.is_active]
        # sorted() is stable: equal scores keep insertion order
        return sorted(active, key=lambda e: e.performance_score, reverse=True)

    async def get_expert(self, name: str) -> ExpertProfile | None:
        expert = self._experts.get(name)
        return replace(expert) if expert else None

    async def update_expert_score(self, name: str, score: float) -> None:
        if name in self._experts:
            self._experts[name].performance_score = score

    async def upsert_expert(self, expert: ExpertProfile) -> None:
        self._experts[expert.name] = replace(expert)

    async def insert_routing_decision(self, decision: RoutingDecision) -> None:
        self.routing_decisions.append(decision)

    async def insert_feedback_record(self, entry: FeedbackEntry) -> int:
        feedback_id = self._next_feedback_id
        self._next_feedback_id += 1
        self.feedback[feedback_id] = replace(entry, id=feedback_id)
        return feedback_id

    async def get_feedback_record(self, feedback_id: int) -> FeedbackEntry | None:
        entry = self.feedback.get(feedback_id)
        return replace(entry) if entry else None

    async def update_feedback_record(
        self,
        feedback_id: int,
        response_quality: int | None,
        user_satisfaction: int | None,
    ) -> FeedbackEntry | None:
        entry = self.feedback.get(feedback_id)
        if entry is None:
            return None
        if response_quality is not None:
            entry.response_quality = response_quality
        if user_satisfaction is not None:
            entry.user_satisfaction = user_satisfaction
        return replace(entry)

    async def list_feedback(self, since: datetime) -> list[FeedbackEntry]:
        return [replace(f) for f in self.feedback.values() if f.created_at >= since]

    async def get_fallback_response(
        self, function_name: str, scenario: str,
    ) -> dict[str, Any] | None:
        candidates = self._fallbacks.get((function_name, scenario))
        if not candidates:
            return None
        _, template = max(candidates, key=lambda c: c[0])
        return copy.deepcopy(template)

    async def upsert_fallback_response(
        self,
        function_name: str,
        scenario: str,
        template: dict[str, Any],
        priority: int = 0,
    ) -> None:
        key = (function_name, scenario)
        kept = [c for c in self._fallbacks.get(key, []) if c[0] != priority]
        kept.append((priority, copy.deepcopy(template)))
        self._fallbacks[key] = kept

    async def insert_agent_log(self, event: TelemetryEvent) -> None:
        self.agent_logs.append(event)

    async def list_agent_logs(self, since: datetime) -> list[TelemetryEvent]:
        return [e for e in self.agent_logs if e.created_at >= since]


# ---------------------------------------------------------------------------
# Implementation 2: SQLAlchemy
# ---------------------------------------------------------------------------


class SqlDataStore:
    """
    Relational store on top of the async session factory.

    Each method runs in its own short transaction, so a failed telemetry
    insert can never roll back a routing decision.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_active_experts(self) -> list[ExpertProfile]:
        stmt = (
            select(Expert)
            .where(Expert.is_active.is_(True))
            .order_by(Expert.performance_score.desc(), Expert.id.asc())
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_expert_to_profile(row) for row in rows]

    async def get_expert(self, name: str) -> ExpertProfile | None:
        stmt = select(Expert).where(Expert.name == name)
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return _expert_to_profile(row) if row else None

    async def update_expert_score(self, name: str, score: float) -> None:
        stmt = (
            update(Expert)
            .where(Expert.name == name)
            .values(performance_score=score)
        )
        async with session_scope(self._session_factory) as session:
            await session.execute(stmt)

    async def upsert_expert(self, expert: ExpertProfile) -> None:
        stmt = select(Expert).where(Expert.name == expert.name)
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = Expert(name=expert.name)
                session.add(row)
            row.description = expert.description
            row.capabilities = list(expert.capabilities)
            row.model_config_ = dict(expert.model_config)
            row.performance_score = expert.performance_score
            row.is_active = expert.is_active

    async def insert_routing_decision(self, decision: RoutingDecision) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(
                RoutingDecisionRecord(
                    request_id=decision.request_id,
                    user_id=decision.user_id,
                    query=decision.query,
                    query_type=decision.query_type,
                    selected_expert=decision.selected_expert,
                    confidence_score=decision.confidence_score,
                    alternative_experts=list(decision.alternative_experts),
                    reasoning=decision.reasoning,
                    model_used=decision.model_used,
                    created_at=decision.created_at,
                )
            )

    async def insert_feedback_record(self, entry: FeedbackEntry) -> int:
        row = FeedbackRecord(
            request_id=entry.request_id,
            expert_name=entry.expert_name,
            response_quality=entry.response_quality,
            user_satisfaction=entry.user_satisfaction,
            response_time_ms=entry.response_time_ms,
            tokens_used=entry.tokens_used,
            score_applied=entry.score_applied,
            created_at=entry.created_at,
        )
        async with session_scope(self._session_factory) as session:
            session.add(row)
            await session.flush()
            return row.id

    async def get_feedback_record(self, feedback_id: int) -> FeedbackEntry | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(FeedbackRecord, feedback_id)
        return _feedback_to_entry(row) if row else None

    async def update_feedback_record(
        self,
        feedback_id: int,
        response_quality: int | None,
        user_satisfaction: int | None,
    ) -> FeedbackEntry | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(FeedbackRecord, feedback_id)
            if row is None:
                return None
            if response_quality is not None:
                row.response_quality = response_quality
            if user_satisfaction is not None:
                row.user_satisfaction = user_satisfaction
        return _feedback_to_entry(row)

    async def list_feedback(self, since: datetime) -> list[FeedbackEntry]:
        stmt = select(FeedbackRecord).where(FeedbackRecord.created_at >= since)
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_feedback_to_entry(row) for row in rows]

    async def get_fallback_response(
        self, function_name: str, scenario: str,
    ) -> dict[str, Any] | None:
        stmt = (
            select(FallbackResponse.response_template)
            .where(
                FallbackResponse.function_name == function_name,
                FallbackResponse.scenario == scenario,
                FallbackResponse.is_active.is_(True),
            )
            .order_by(FallbackResponse.priority.desc())
            .limit(1)
        )
        async with session_scope(self._session_factory) as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def upsert_fallback_response(
        self,
        function_name: str,
        scenario: str,
        template: dict[str, Any],
        priority: int = 0,
    ) -> None:
        stmt = select(FallbackResponse).where(
            FallbackResponse.function_name == function_name,
            FallbackResponse.scenario == scenario,
            FallbackResponse.priority == priority,
        )
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = FallbackResponse(
                    function_name=function_name,
                    scenario=scenario,
                    priority=priority,
                )
                session.add(row)
            row.response_template = template
            row.is_active = True

    async def insert_agent_log(self, event: TelemetryEvent) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(
                AgentLog(
                    function_name=event.function_name,
                    expert_used=event.expert_used,
                    dependency=event.dependency,
                    status_code=event.status_code,
                    latency_ms=event.latency_ms,
                    tokens_used=event.tokens_used,
                    estimated_cost=event.estimated_cost,
                    model_used=event.model_used,
                    error_message=event.error_message,
                    metadata_=event.metadata,
                    created_at=event.created_at,
                )
            )

    async def list_agent_logs(self, since: datetime) -> list[TelemetryEvent]:
        stmt = (
            select(AgentLog)
            .where(AgentLog.created_at >= since)
            .order_by(AgentLog.created_at.desc())
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            TelemetryEvent(
                function_name=row.function_name,
                status_code=row.status_code,
                latency_ms=row.latency_ms,
                tokens_used=row.tokens_used,
                estimated_cost=row.estimated_cost,
                model_used=row.model_used,
                expert_used=row.expert_used,
                dependency=row.dependency,
                error_message=row.error_message,
                metadata=row.metadata_ or {},
                created_at=row.created_at,
            )
            for row in rows
        ]


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def build_data_store(
    config: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> DataStore:
    """
    Build the configured data store.

    Called once from the application lifespan; the result is shared by
    every component through app.state.
    """
    if config.datastore_type == "memory":
        logger.info("Using in-memory data store")
        return InMemoryDataStore()

    if session_factory is None:
        raise ValueError("SQL data store requires a session factory")

    logger.info("Using SQL data store")
    return SqlDataStore(session_factory)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _expert_to_profile(row: Expert) -> ExpertProfile:
    return ExpertProfile(
        name=row.name,
        description=row.description or "",
        capabilities=list(row.capabilities or []),
        model_config=dict(row.model_config_ or {}),
        performance_score=float(row.performance_score),
        is_active=bool(row.is_active),
    )


def _feedback_to_entry(row: FeedbackRecord) -> FeedbackEntry:
    return FeedbackEntry(
        id=row.id,
        request_id=row.request_id,
        expert_name=row.expert_name,
        response_quality=row.response_quality,
        user_satisfaction=row.user_satisfaction,
        response_time_ms=row.response_time_ms,
        tokens_used=row.tokens_used,
        score_applied=bool(row.score_applied),
        created_at=row.created_at,
    )
