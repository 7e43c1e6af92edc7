# =============================================================================
# FastAPI Application — Wiring of the Routing Core
# =============================================================================
#
# create_app() builds the FastAPI instance; the lifespan constructs every
# collaborator exactly once and stores it on app.state:
#
#   Settings
#     ├── data store         (SQLAlchemy async engine or in-memory)
#     ├── LLM provider       (Anthropic / OpenAI-compatible, optional)
#     ├── TelemetryRecorder  ─┐
#     ├── ServiceHealthRegistry├──▶ ResilienceExecutor ──┐
#     ├── ResponseCache       ─┘                         ├──▶ CommandDispatcher
#     ├── ExpertRouter (LLMClassifier + keyword table) ──┘
#     └── PerformanceFeedbackLoop
#
# DESIGN DECISION: Explicit construction, no module-level singletons.
# Tests call create_app(config, llm=fake, store=InMemoryDataStore(...))
# and get a fully wired app with no network or database.
#
# RUN:
#   uvicorn --factory app.main:create_app --reload
#
# DESIGN DECISION: A missing LLM key is not fatal. The router falls back
# to keyword routing and experts fail into their fallback templates, so
# the service still answers (degraded) instead of refusing to start.
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.agents.experts import LLMExpertExecutor
from app.agents.keywords import load_keyword_table
from app.agents.orchestrator import CommandDispatcher
from app.agents.router import ExpertRouter, LLMClassifier
from app.api import command, feedback, health, resilience
from app.api.audit import RequestTelemetryMiddleware
from app.config import Settings, get_settings
from app.db.engine import build_async_engine, build_session_factory, create_schema
from app.db.seed import seed_defaults
from app.services.cache import ResponseCache
from app.services.feedback import PerformanceFeedbackLoop
from app.services.health import CircuitBreakerConfig, ServiceHealthRegistry
from app.services.llm import LLMProvider, build_llm_provider
from app.services.resilience import ResilienceExecutor, RetryPolicy
from app.services.store import DataStore, SqlDataStore, build_data_store
from app.services.telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)


def configure_logging(config: Settings) -> None:
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    config: Settings | None = None,
    llm: LLMProvider | None = None,
    store: DataStore | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings to use (default: environment via get_settings()).
        llm: Pre-built LLM provider; built from config when omitted.
        store: Pre-built data store; built from config when omitted.
    """
    config = config or get_settings()
    configure_logging(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("%s starting (datastore=%s)", config.app_name, config.datastore_type)

        engine = None
        data_store = store
        if data_store is None:
            if config.datastore_type == "memory":
                data_store = build_data_store(config)
            else:
                engine = build_async_engine(config.database_url, echo=config.debug)
                await create_schema(engine)
                data_store = SqlDataStore(build_session_factory(engine))

        if config.seed_default_experts:
            await seed_defaults(data_store)

        provider = llm
        if provider is None:
            try:
                provider = build_llm_provider(config)
            except ValueError as e:
                logger.warning("LLM provider unavailable, running degraded: %s", e)

        telemetry = TelemetryRecorder(data_store)
        health_registry = ServiceHealthRegistry(CircuitBreakerConfig.from_settings(config))
        cache = ResponseCache(config.cache_ttl_s, config.cache_max_entries)
        executor = ResilienceExecutor(
            health_registry,
            cache,
            LLMExpertExecutor(data_store, provider),
            data_store,
            telemetry=telemetry,
            policy=RetryPolicy.from_settings(config),
            unavailable_message=config.unavailable_message,
        )

        classifier = None
        if provider is not None:
            classifier = LLMClassifier(
                provider,
                temperature=config.classifier_temperature,
                max_tokens=config.classifier_max_tokens,
            )
        router = ExpertRouter.from_settings(
            data_store,
            config,
            classifier=classifier,
            keyword_table=load_keyword_table(config.keyword_table_path),
            health=health_registry,
        )
        feedback_loop = PerformanceFeedbackLoop.from_settings(data_store, config)
        dispatcher = CommandDispatcher.from_settings(
            config, router, executor, data_store, telemetry, feedback_loop,
        )

        app.state.settings = config
        app.state.store = data_store
        app.state.telemetry = telemetry
        app.state.health = health_registry
        app.state.cache = cache
        app.state.executor = executor
        app.state.router = router
        app.state.feedback = feedback_loop
        app.state.dispatcher = dispatcher

        yield

        await dispatcher.drain()
        if engine is not None:
            await engine.dispose()
        logger.info("%s shutting down", config.app_name)

    app = FastAPI(
        title=config.app_name,
        description=(
            "Routes natural-language investment commands to specialist "
            "experts with circuit breaking, retries and adaptive scoring."
        ),
        version=config.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(RequestTelemetryMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(command.router)
    app.include_router(resilience.router)
    app.include_router(feedback.router)
    app.include_router(health.router)
    return app
