# =============================================================================
# Investment Assistant Command Router
# =============================================================================
# Routes natural-language investment commands (voice transcripts or typed
# text) to specialist "experts", runs them behind a circuit breaker with
# retries, caching and fallback templates, and learns expert quality from
# feedback through an exponential moving average.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (command, resilience,
#   │                    feedback, health) and request telemetry middleware
#   ├── agents/       → Expert router, expert executor, LangGraph dispatcher
#   ├── db/           → Async engine, ORM models, default catalog seed
#   ├── models/       → Domain dataclasses and Pydantic V2 API schemas
#   └── services/     → Health registry, cache, resilience executor,
#                        feedback loop, data store, LLM providers, pricing
# =============================================================================
