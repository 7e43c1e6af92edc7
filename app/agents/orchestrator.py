# =============================================================================
# Command Dispatcher — LangGraph Orchestration of One Command
# =============================================================================
#
# Top-level entry point: a raw command goes in, a structured result with
# routing metadata and performance figures comes out.
#
# GRAPH TOPOLOGY:
#   START ──▶ route ──▶ execute ──▶ record ──▶ END
#
#   route   - ExpertRouter.select_expert, persist the RoutingDecision,
#             "router" telemetry checkpoint
#   execute - ResilienceExecutor.execute on the selected expert; if that
#             fails (not cancelled) and an alternative exists, one more
#             execution against the first alternative
#   record  - FeedbackRecord with null ratings, cost estimate,
#             "moe-orchestrator" telemetry checkpoint, background score
#             update
#
# DESIGN DECISION: Linear graph, compiled once per dispatcher.
# The alternative-expert retry lives inside the execute node rather than
# as a conditional edge; the graph stays a straight pipeline that is easy
# to trace. Nodes are bound methods so every collaborator is injected
# through the constructor instead of module globals.
#
# DESIGN DECISION: Plain TypedDict state (not MessagesState).
# The state carries non-serialisable objects (RouteSelection,
# ExecutionResult, CancelToken). Safe as long as no checkpointer is
# configured on the graph (current: no checkpointer).
#
# DESIGN DECISION: handle() never raises except for an empty query.
# Any other exception is logged with the request id, written to telemetry
# with status 500 and turned into an error DispatchResult carrying a
# user-safe message.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.router import KEYWORD_MODEL, ExpertRouter, RouteSelection
from app.config import Settings
from app.errors import InvalidRequestError
from app.models.domain import FeedbackEntry, RoutingDecision
from app.services.feedback import FeedbackSample, PerformanceFeedbackLoop
from app.services.pricing import estimate_cost
from app.services.resilience import CancelToken, ExecutionResult, ResilienceExecutor
from app.services.store import DataStore
from app.services.telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)

DISPATCH_FUNCTION = "moe-orchestrator"
ROUTER_FUNCTION = "router"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class DispatchResult:
    """Everything the HTTP layer returns for one command."""

    request_id: str
    success: bool
    response: str
    expert: str | None = None
    feedback_id: int | None = None
    confidence: float | None = None
    alternatives: list[str] = field(default_factory=list)
    reasoning: str = ""
    query_type: str = "general"
    fallback_used: bool = False
    fallback_reason: str | None = None
    from_cache: bool = False
    total_latency_ms: int = 0
    total_tokens: int = 0
    cost_usd: float | None = 0.0
    model_used: str | None = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


# ---------------------------------------------------------------------------
# Graph State Schema
# ---------------------------------------------------------------------------


class DispatchState(TypedDict, total=False):
    """
    State that flows through the dispatch graph.

    Uses total=False so nodes only need to return the keys they update.
    """

    # --- Input (set by handle) ---
    request_id: str
    query: str
    user_id: str | None
    context: dict[str, Any]
    started: float
    cancel_token: CancelToken

    # --- Set by route ---
    selection: RouteSelection

    # --- Set by execute ---
    execution: ExecutionResult
    expert_used: str
    fallback_used: bool
    fallback_reason: str | None

    # --- Set by record ---
    feedback_id: int | None
    total_latency_ms: int
    total_tokens: int
    cost_usd: float | None


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class CommandDispatcher:
    """
    Routes, executes and records one command per handle() call.

    Example:
        >>> dispatcher = CommandDispatcher(router, executor, store, telemetry)
        >>> result = await dispatcher.handle("Qual o preço da PETR4?", "user-1")
        >>> result.expert, result.fallback_used
        ('market_analyst', False)
    """

    def __init__(
        self,
        router: ExpertRouter,
        executor: ResilienceExecutor,
        store: DataStore,
        telemetry: TelemetryRecorder,
        feedback: PerformanceFeedbackLoop | None = None,
        provider_type: str = "openai_compatible",
        timeout_s: float | None = 90.0,
        unavailable_message: str = "Serviço temporariamente indisponível",
        error_message: str = (
            "Desculpe, não consegui processar sua solicitação no momento. "
            "Nossa equipe foi notificada."
        ),
    ) -> None:
        self._router = router
        self._executor = executor
        self._store = store
        self._telemetry = telemetry
        self._feedback = feedback
        self._provider_type = provider_type
        self._timeout_s = timeout_s
        self._unavailable_message = unavailable_message
        self._error_message = error_message
        self._pending: set[asyncio.Task] = set()
        self._graph = self._build_graph()

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        router: ExpertRouter,
        executor: ResilienceExecutor,
        store: DataStore,
        telemetry: TelemetryRecorder,
        feedback: PerformanceFeedbackLoop | None = None,
    ) -> CommandDispatcher:
        return cls(
            router,
            executor,
            store,
            telemetry,
            feedback=feedback if config.update_scores_on_dispatch else None,
            provider_type=config.llm_provider,
            timeout_s=config.dispatch_timeout_s,
            unavailable_message=config.unavailable_message,
            error_message=config.error_message,
        )

    def _build_graph(self):
        builder = StateGraph(DispatchState)
        builder.add_node("route", self._route_node)
        builder.add_node("execute", self._execute_node)
        builder.add_node("record", self._record_node)

        builder.add_edge(START, "route")
        builder.add_edge("route", "execute")
        builder.add_edge("execute", "record")
        builder.add_edge("record", END)
        return builder.compile()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def handle(
        self,
        query: str,
        user_id: str | None = None,
        context: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> DispatchResult:
        """
        Run one command through route → execute → record.

        Raises:
            InvalidRequestError: query is missing or blank.
        """
        if not query or not query.strip():
            raise InvalidRequestError("Query is required")

        request_id = str(uuid.uuid4())
        started = time.monotonic()
        token = CancelToken()
        timeout = timeout_s if timeout_s is not None else self._timeout_s
        timer = None
        if timeout:
            timer = asyncio.get_running_loop().call_later(
                timeout, token.cancel, "dispatch timeout",
            )

        initial_state: DispatchState = {
            "request_id": request_id,
            "query": query,
            "user_id": user_id,
            "context": context or {},
            "started": started,
            "cancel_token": token,
        }
        logger.info("Dispatching %s: query='%s'", request_id, query[:50])

        try:
            state = await self._graph.ainvoke(initial_state)
        except Exception as e:
            logger.exception(
                "Dispatch %s failed (user=%s, query='%s')",
                request_id, user_id, query[:50],
            )
            return await self._error_result(request_id, started, e)
        finally:
            if timer is not None:
                timer.cancel()

        return self._to_result(state)

    async def drain(self) -> None:
        """Wait for background score updates (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -----------------------------------------------------------------------
    # Graph Nodes
    # -----------------------------------------------------------------------

    async def _route_node(self, state: DispatchState) -> dict:
        t0 = time.monotonic()
        selection = await self._router.select_expert(state["query"], state["context"])

        await self._store.insert_routing_decision(
            RoutingDecision(
                request_id=state["request_id"],
                query=state["query"],
                selected_expert=selection.expert,
                confidence_score=selection.confidence,
                alternative_experts=tuple(selection.alternatives),
                reasoning=selection.reasoning,
                query_type=selection.query_type,
                model_used=selection.model_used,
                user_id=state.get("user_id"),
            )
        )
        await self._telemetry.record(
            ROUTER_FUNCTION,
            200,
            int((time.monotonic() - t0) * 1000),
            tokens_used=selection.tokens_used,
            model_used=selection.model_used,
            expert_used=selection.expert,
            metadata={
                "request_id": state["request_id"],
                "confidence": selection.confidence,
                "used_fallback": selection.used_fallback,
                "substituted": selection.substituted,
            },
        )
        logger.info(
            "Request %s routed to %s (confidence=%.0f)",
            state["request_id"], selection.expert, selection.confidence,
        )
        return {"selection": selection}

    async def _execute_node(self, state: DispatchState) -> dict:
        selection = state["selection"]
        token = state["cancel_token"]
        payload = {"query": state["query"], "context": state["context"]}

        execution = await self._executor.execute(
            selection.expert, payload, cancel_token=token,
        )
        if execution.success or execution.cancelled or not selection.alternatives:
            return {
                "execution": execution,
                "expert_used": selection.expert,
                "fallback_used": False,
                "fallback_reason": None,
            }

        alternative = selection.alternatives[0]
        reason = execution.error or (execution.reason.value if execution.reason else None)
        logger.warning(
            "Request %s: %s failed (%s), trying alternative %s",
            state["request_id"], selection.expert, reason, alternative,
        )
        retry = await self._executor.execute(alternative, payload, cancel_token=token)
        return {
            "execution": retry,
            "expert_used": alternative,
            "fallback_used": True,
            "fallback_reason": reason,
        }

    async def _record_node(self, state: DispatchState) -> dict:
        selection = state["selection"]
        execution = state["execution"]
        expert_used = state["expert_used"]
        # A cached answer cost nothing this time; only routing is counted
        live = execution.success and not execution.from_cache
        value = execution.value if live else None

        expert_tokens = int(value.get("tokens_used", 0)) if isinstance(value, dict) else 0
        total_tokens = selection.tokens_used + expert_tokens
        total_latency_ms = int((time.monotonic() - state["started"]) * 1000)
        cost = self._estimate_cost(selection, value)
        score_applied = self._feedback is not None and live

        feedback_id = await self._store.insert_feedback_record(
            FeedbackEntry(
                request_id=state["request_id"],
                expert_name=expert_used,
                response_time_ms=total_latency_ms,
                tokens_used=total_tokens,
                score_applied=score_applied,
            )
        )

        await self._telemetry.record(
            DISPATCH_FUNCTION,
            200 if execution.success else execution.status_code,
            total_latency_ms,
            tokens_used=total_tokens,
            estimated_cost=cost,
            model_used=selection.model_used,
            expert_used=expert_used,
            error_message=execution.error,
            metadata={
                "request_id": state["request_id"],
                "fallback_used": state.get("fallback_used", False),
                "from_cache": execution.from_cache,
            },
        )

        if score_applied:
            self._schedule_score_update(
                expert_used,
                FeedbackSample(
                    response_time_ms=total_latency_ms,
                    tokens_used=total_tokens,
                ),
            )

        return {
            "feedback_id": feedback_id,
            "total_latency_ms": total_latency_ms,
            "total_tokens": total_tokens,
            "cost_usd": cost,
        }

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _estimate_cost(
        self, selection: RouteSelection, value: dict[str, Any] | None,
    ) -> float | None:
        """Routing cost plus expert cost; None if either model is unpriced."""
        if selection.model_used == KEYWORD_MODEL or not selection.tokens_used:
            routing_cost: float | None = 0.0
        else:
            # Only the total is known for the classifier call
            routing_cost = estimate_cost(
                self._provider_type, selection.model_used or "",
                selection.tokens_used, 0,
            )

        if not isinstance(value, dict) or not value.get("model"):
            expert_cost: float | None = 0.0
        else:
            expert_cost = estimate_cost(
                self._provider_type,
                value["model"],
                int(value.get("input_tokens", 0)),
                int(value.get("output_tokens", 0)),
            )

        if routing_cost is None or expert_cost is None:
            return None
        return routing_cost + expert_cost

    def _schedule_score_update(self, expert_name: str, sample: FeedbackSample) -> None:
        task = asyncio.create_task(self._update_score(expert_name, sample))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _update_score(self, expert_name: str, sample: FeedbackSample) -> None:
        try:
            await self._feedback.update_score(expert_name, sample)
        except Exception as e:
            logger.error("Background score update for %s failed: %s", expert_name, e)

    def _to_result(self, state: DispatchState) -> DispatchResult:
        selection = state["selection"]
        execution = state["execution"]
        return DispatchResult(
            request_id=state["request_id"],
            success=execution.success,
            response=self._response_text(execution),
            expert=state["expert_used"],
            feedback_id=state.get("feedback_id"),
            confidence=selection.confidence,
            alternatives=list(selection.alternatives),
            reasoning=selection.reasoning,
            query_type=selection.query_type,
            fallback_used=state.get("fallback_used", False),
            fallback_reason=state.get("fallback_reason"),
            from_cache=execution.from_cache,
            total_latency_ms=state.get("total_latency_ms", 0),
            total_tokens=state.get("total_tokens", 0),
            cost_usd=state.get("cost_usd"),
            model_used=selection.model_used,
        )

    def _response_text(self, execution: ExecutionResult) -> str:
        value = execution.value
        if isinstance(value, dict):
            text = value.get("response") or value.get("message")
            if text:
                return str(text)
        elif isinstance(value, str) and value:
            return value
        return self._unavailable_message

    async def _error_result(
        self, request_id: str, started: float, error: Exception,
    ) -> DispatchResult:
        latency_ms = int((time.monotonic() - started) * 1000)
        message = str(error) or type(error).__name__
        await self._telemetry.record(
            DISPATCH_FUNCTION,
            500,
            latency_ms,
            estimated_cost=0.0,
            error_message=message,
            metadata={"request_id": request_id},
        )
        return DispatchResult(
            request_id=request_id,
            success=False,
            response=self._error_message,
            total_latency_ms=latency_ms,
            cost_usd=0.0,
            model_used="error-fallback",
            error=message,
        )
