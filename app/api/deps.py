# =============================================================================
# API Dependencies — FastAPI Dependency Injection for Core Components
# =============================================================================
#
# The routing core is constructed once in the application lifespan
# (app/main.py) and stored on `app.state`. These dependencies hand the
# shared instances to route handlers.
#
# DESIGN DECISION: FastAPI dependencies (not module globals).
# - Each endpoint declares exactly what it uses via Depends(...)
# - Tests swap in fakes via app.dependency_overrides or by building the
#   app with pre-built components
# - No hidden global mutable state: health entries and the cache live in
#   objects owned by the app instance
# =============================================================================

from __future__ import annotations

from fastapi import Request

from app.agents.orchestrator import CommandDispatcher
from app.config import Settings
from app.services.cache import ResponseCache
from app.services.feedback import PerformanceFeedbackLoop
from app.services.health import ServiceHealthRegistry
from app.services.resilience import ResilienceExecutor
from app.services.store import DataStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_dispatcher(request: Request) -> CommandDispatcher:
    return request.app.state.dispatcher


def get_executor(request: Request) -> ResilienceExecutor:
    return request.app.state.executor


def get_store(request: Request) -> DataStore:
    return request.app.state.store


def get_health_registry(request: Request) -> ServiceHealthRegistry:
    return request.app.state.health


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache


def get_feedback_loop(request: Request) -> PerformanceFeedbackLoop:
    return request.app.state.feedback
