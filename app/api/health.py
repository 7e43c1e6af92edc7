# =============================================================================
# Health API — Liveness, Dependency Circuits and Expert Statistics
# =============================================================================
#
# GET /health           - overall status from the last 5 minutes of
#                         telemetry: success rate ≥ 95% healthy,
#                         ≥ 80% degraded, otherwise unhealthy (HTTP 503).
#                         No traffic counts as 100%. Client errors (4xx)
#                         on request rows are left out.
# GET /health/services  - Service Health Registry snapshot (circuit state
#                         per dependency) plus response cache counters
# GET /health/experts   - active experts with 24h usage and average
#                         ratings from the feedback rows
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.audit import HTTP_FUNCTION
from app.api.deps import get_app_settings, get_cache, get_health_registry, get_store
from app.config import Settings
from app.models.responses import (
    CacheStats,
    ExpertHealthItem,
    ExpertHealthResponse,
    HealthResponse,
    ServiceHealthItem,
    ServiceHealthResponse,
)
from app.services.cache import ResponseCache
from app.services.health import ServiceHealthRegistry
from app.services.store import DataStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

HEALTH_WINDOW = timedelta(minutes=5)
EXPERT_STATS_WINDOW = timedelta(hours=24)
HEALTHY_SUCCESS_RATE = 95.0
DEGRADED_SUCCESS_RATE = 80.0


def overall_status(success_rate: float) -> str:
    if success_rate >= HEALTHY_SUCCESS_RATE:
        return "healthy"
    if success_rate >= DEGRADED_SUCCESS_RATE:
        return "degraded"
    return "unhealthy"


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: DataStore = Depends(get_store),
    config: Settings = Depends(get_app_settings),
):
    now = datetime.now(UTC)
    events = [
        e for e in await store.list_agent_logs(now - HEALTH_WINDOW)
        if not _is_client_error(e)
    ]

    total = len(events)
    succeeded = sum(1 for e in events if e.status_code < 400)
    success_rate = 100.0 if total == 0 else succeeded * 100.0 / total
    avg_latency = (
        sum(e.latency_ms for e in events) / total if total else 0.0
    )
    status = overall_status(success_rate)

    body = HealthResponse(
        status=status,
        version=config.app_version,
        service=config.app_name,
        window_minutes=int(HEALTH_WINDOW.total_seconds() // 60),
        total_requests=total,
        success_rate=round(success_rate, 2),
        avg_latency_ms=round(avg_latency, 1),
        checked_at=now,
    )
    if status == "unhealthy":
        logger.warning("Health check unhealthy: success_rate=%.1f%%", success_rate)
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return body


@router.get("/health/services", response_model=ServiceHealthResponse)
async def service_health(
    health: ServiceHealthRegistry = Depends(get_health_registry),
    cache: ResponseCache = Depends(get_cache),
) -> ServiceHealthResponse:
    lookups = cache.hits + cache.misses
    return ServiceHealthResponse(
        services=[
            ServiceHealthItem(
                name=entry.name,
                status=entry.status.value,
                consecutive_failures=entry.consecutive_failures,
                error_rate=round(entry.error_rate, 4),
                avg_latency_ms=round(entry.avg_latency_ms, 1),
                circuit_breaker_open=entry.circuit_breaker_open,
                last_check=entry.last_check,
            )
            for entry in health.snapshot()
        ],
        cache=CacheStats(
            entries=len(cache),
            hits=cache.hits,
            misses=cache.misses,
            hit_rate=round(cache.hits * 100.0 / lookups, 2) if lookups else 0.0,
        ),
    )


@router.get("/health/experts", response_model=ExpertHealthResponse)
async def expert_health(
    store: DataStore = Depends(get_store),
) -> ExpertHealthResponse:
    experts = await store.get_active_experts()
    feedback = await store.list_feedback(datetime.now(UTC) - EXPERT_STATS_WINDOW)

    items = []
    for expert in experts:
        rows = [f for f in feedback if f.expert_name == expert.name]
        items.append(
            ExpertHealthItem(
                name=expert.name,
                performance_score=round(expert.performance_score, 2),
                usage_24h=len(rows),
                avg_quality=_average(f.response_quality for f in rows),
                avg_satisfaction=_average(f.user_satisfaction for f in rows),
            )
        )
    return ExpertHealthResponse(experts=items)


def _average(values) -> float | None:
    rated = [v for v in values if v is not None]
    if not rated:
        return None
    return round(sum(rated) / len(rated), 2)


def _is_client_error(event) -> bool:
    return event.function_name == HTTP_FUNCTION and 400 <= event.status_code < 500
