# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, session scope, ORM models and the
# default catalog seed.
#
# Key exports:
#   - build_async_engine / build_session_factory / session_scope
#   - Base: SQLAlchemy declarative base for ORM models
#   - Expert, RoutingDecisionRecord, FeedbackRecord, FallbackResponse,
#     AgentLog: ORM models
# =============================================================================
