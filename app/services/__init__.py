# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - health.py: per-dependency circuit breaker registry
#   - cache.py: TTL + LRU response cache
#   - resilience.py: cache → circuit gate → retry/backoff → fallback
#   - feedback.py: EMA performance scores for experts
#   - telemetry.py: outcome checkpoints written as agent log rows
#   - store.py: pluggable data store protocol (SQLAlchemy, in-memory)
#   - llm.py: multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - pricing.py: per-model cost registry
# =============================================================================
