# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - command.py: POST/OPTIONS /command (the voice/text entry point)
#   - resilience.py: POST /resilience (run any dependency resiliently)
#   - feedback.py: POST /feedback/{id} (user ratings → expert scores)
#   - health.py: GET /health, /health/services, /health/experts
#   - audit.py: request telemetry middleware
#   - deps.py: app.state dependency getters
# =============================================================================
