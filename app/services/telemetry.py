# =============================================================================
# Telemetry Recorder — Explicit Outcome Checkpoints
# =============================================================================
#
# Every component reports outcomes through one call, `record()`, at fixed
# checkpoints: end of routing, end of each resilient execution, end of
# dispatch, and once per HTTP request (middleware). Rows land in the data
# store's agent log, so tests can assert telemetry by reading the
# in-memory store instead of mocking a database.
#
# DESIGN DECISION: Telemetry failures are logged and swallowed.
# A broken agent_logs table must never turn a good answer into an error.
# =============================================================================

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from app.models.domain import TelemetryEvent

if TYPE_CHECKING:
    from app.services.store import DataStore

logger = logging.getLogger(__name__)


class TelemetryRecorder:
    """Writes TelemetryEvent rows to the data store."""

    def __init__(self, store: DataStore, enabled: bool = True) -> None:
        self._store = store
        self._enabled = enabled

    async def record(
        self,
        function_name: str,
        status_code: int,
        latency_ms: int,
        *,
        tokens_used: int = 0,
        estimated_cost: float | None = None,
        model_used: str | None = None,
        expert_used: str | None = None,
        dependency: str | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TelemetryEvent:
        """Build and persist one event. Returns the event for chaining."""
        event = TelemetryEvent(
            function_name=function_name,
            status_code=status_code,
            latency_ms=int(latency_ms),
            tokens_used=tokens_used,
            estimated_cost=estimated_cost,
            model_used=model_used,
            expert_used=expert_used,
            dependency=dependency,
            error_message=error_message[:2000] if error_message else None,
            metadata=metadata or {},
        )
        if not self._enabled:
            return event

        try:
            await self._store.insert_agent_log(event)
        except Exception as e:
            logger.warning(
                "Failed to write telemetry for %s (status=%d): %s",
                function_name, status_code, e,
            )
        return event
