# =============================================================================
# Models Package — Domain Records and Pydantic V2 Schemas
# =============================================================================
#   - domain.py: dataclasses the routing core passes around (ExpertProfile,
#     RoutingDecision, FeedbackEntry, TelemetryEvent)
#   - requests.py / responses.py: API request/response schemas
#
# Both are SEPARATE from the database models (app/db/models.py), so the
# core runs against the in-memory store without SQLAlchemy sessions and
# the API contract can evolve without a migration.
# =============================================================================
