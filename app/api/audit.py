# =============================================================================
# Request Telemetry Middleware — One Agent-Log Row per HTTP Request
# =============================================================================
#
# Records method, path, status and latency of every API request through
# the TelemetryRecorder, including requests rejected before reaching the
# dispatcher (400/405/422), so every failure leaves a telemetry trace.
#
# DESIGN DECISION: Starlette middleware (not a FastAPI dependency) because:
# 1. Middleware wraps the ENTIRE request lifecycle (captures status code)
# 2. Captures timing across the full request
# 3. Does not require every endpoint to explicitly opt-in
#
# DESIGN DECISION: Non-blocking writes. The row is written after the
# response is generated, and TelemetryRecorder swallows store failures.
# =============================================================================

from __future__ import annotations

import logging
import time

from starlette.middleware.base import (
    BaseHTTPMiddleware,
    RequestResponseEndpoint,
)
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_FUNCTION = "http"

# Health probes and docs would drown out real traffic
_SKIP_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json")


class RequestTelemetryMiddleware(BaseHTTPMiddleware):
    """
    Writes a telemetry row for each request.

    Reads the recorder from app.state (set by the lifespan) and the
    command text from request.state (set by the /command handler).
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path.startswith(_SKIP_PREFIXES):
            return await call_next(request)

        start_time = time.monotonic()
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        telemetry = getattr(request.app.state, "telemetry", None)
        if telemetry is None:
            return response

        query = getattr(request.state, "telemetry_query", None)
        await telemetry.record(
            HTTP_FUNCTION,
            response.status_code,
            elapsed_ms,
            metadata={
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
                "query": query[:500] if query else None,
            },
        )
        return response
