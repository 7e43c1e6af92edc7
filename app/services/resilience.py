# =============================================================================
# Resilience Executor — Cache, Circuit Gate, Retry, Fallback
# =============================================================================
#
# Wraps any downstream call (an expert invocation or another named
# dependency) so the caller always gets a result back:
#
#   1. CACHE    - fresh entry for (dependency, payload)? return it,
#                 tagged from_cache. The only fast path.
#   2. GATE     - circuit open and still cooling down? skip every retry
#                 and serve the `circuit_breaker_open` fallback.
#   3. RETRY    - up to max_retries attempts, each under an adaptive
#                 timeout clamp(avg_latency * 3, 5s, 30s). Failures back
#                 off min(1000 * 2^(attempt-1), 10000) ms between tries.
#   4. FALLBACK - attempts exhausted: classify the last error as
#                 timeout / api_error / default_error and serve the
#                 configured template for (dependency, scenario).
#
# DESIGN DECISION: Nothing but InvalidRequestError leaves execute().
# Downstream errors become ExecutionResult(success=False, fallback=True).
#
# DESIGN DECISION: Cooperative cancellation through CancelToken.
# The in-flight attempt is raced against the token and abandoned when it
# fires; backoff sleeps are raced the same way, and no attempt starts once
# the token is set. asyncio.CancelledError itself is never swallowed.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from app.config import Settings
from app.errors import InvalidRequestError
from app.services.cache import ResponseCache
from app.services.health import ServiceHealthRegistry
from app.services.telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborator Protocols
# ---------------------------------------------------------------------------


class DependencyInvoker(Protocol):
    """Anything that can call a named downstream dependency."""

    async def invoke_dependency(self, name: str, payload: dict[str, Any]) -> Any: ...


class FallbackSource(Protocol):
    """Lookup of canned responses (the data store satisfies this)."""

    async def get_fallback_response(
        self, function_name: str, scenario: str,
    ) -> dict[str, Any] | None: ...


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class FailureReason(str, Enum):
    """Why a result came from a fallback template."""

    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    DEFAULT_ERROR = "default_error"
    CANCELLED = "cancelled"


_STATUS_BY_REASON = {
    FailureReason.CIRCUIT_BREAKER_OPEN: 503,
    FailureReason.TIMEOUT: 504,
    FailureReason.API_ERROR: 502,
    FailureReason.DEFAULT_ERROR: 500,
    FailureReason.CANCELLED: 499,
}


@dataclass
class ExecutionResult:
    """Outcome of one resilient execution."""

    dependency: str
    success: bool
    value: Any = None
    from_cache: bool = False
    fallback: bool = False
    reason: FailureReason | None = None
    attempts: int = 0
    latency_ms: int = 0
    error: str | None = None

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return _STATUS_BY_REASON.get(self.reason, 500)

    @property
    def cancelled(self) -> bool:
        return self.reason is FailureReason.CANCELLED


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt count, backoff curve and adaptive timeout bounds."""

    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 10000
    timeout_multiplier: float = 3.0
    timeout_min_ms: int = 5000
    timeout_max_ms: int = 30000
    default_latency_ms: int = 5000

    @classmethod
    def from_settings(cls, config: Settings) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            backoff_base_ms=config.backoff_base_ms,
            backoff_max_ms=config.backoff_max_ms,
            timeout_multiplier=config.timeout_latency_multiplier,
            timeout_min_ms=config.timeout_min_ms,
            timeout_max_ms=config.timeout_max_ms,
            default_latency_ms=config.default_latency_ms,
        )

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before the retry that follows failed attempt `attempt` (1-based)."""
        return min(self.backoff_base_ms * 2 ** (attempt - 1), self.backoff_max_ms)

    def attempt_timeout_ms(self, avg_latency_ms: float) -> float:
        """Per-attempt timeout from the dependency's smoothed latency."""
        baseline = avg_latency_ms or self.default_latency_ms
        return max(
            float(self.timeout_min_ms),
            min(float(self.timeout_max_ms), baseline * self.timeout_multiplier),
        )


class CancelToken:
    """
    Cooperative cancellation signal for one execution.

    Example:
        >>> token = CancelToken()
        >>> asyncio.get_running_loop().call_later(30, token.cancel)
        >>> result = await executor.execute("market_analyst", payload,
        ...                                 cancel_token=token)
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class _AttemptCancelled(Exception):
    """Internal: the cancel token fired while an attempt was in flight."""


_API_PATTERN = re.compile(r"\bapi\b", re.IGNORECASE)


def classify_error(error: BaseException | None) -> FailureReason:
    """Map the last attempt's error to a fallback scenario by its message."""
    if error is None:
        return FailureReason.DEFAULT_ERROR
    message = str(error)
    lowered = message.lower()
    if isinstance(error, TimeoutError) or "timeout" in lowered or "timed out" in lowered:
        return FailureReason.TIMEOUT
    if _API_PATTERN.search(message):
        return FailureReason.API_ERROR
    return FailureReason.DEFAULT_ERROR


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class ResilienceExecutor:
    """
    Runs named dependencies with caching, circuit breaking and retries.

    All collaborators are injected; `sleep` exists so tests can observe
    backoff delays without waiting for them.
    """

    def __init__(
        self,
        health: ServiceHealthRegistry,
        cache: ResponseCache,
        invoker: DependencyInvoker,
        fallbacks: FallbackSource,
        telemetry: TelemetryRecorder | None = None,
        policy: RetryPolicy | None = None,
        unavailable_message: str = "Serviço temporariamente indisponível",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._health = health
        self._cache = cache
        self._invoker = invoker
        self._fallbacks = fallbacks
        self._telemetry = telemetry
        self._policy = policy or RetryPolicy()
        self._unavailable_message = unavailable_message
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        dependency_name: str,
        payload: dict[str, Any] | None = None,
        max_retries: int | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ExecutionResult:
        """
        Run `dependency_name` with `payload` and always return a result.

        Raises:
            InvalidRequestError: dependency_name is missing or max_retries < 1.
        """
        if not dependency_name:
            raise InvalidRequestError("Dependency name is required")
        attempts_allowed = self._policy.max_retries if max_retries is None else max_retries
        if attempts_allowed < 1:
            raise InvalidRequestError("max_retries must be at least 1")
        payload = payload or {}
        started = time.monotonic()

        cached = self._cache.get(dependency_name, payload)
        if cached is not None:
            logger.info("Serving %s from cache", dependency_name)
            return ExecutionResult(
                dependency=dependency_name,
                success=True,
                value=cached,
                from_cache=True,
                latency_ms=_elapsed_ms(started),
            )

        if cancel_token is not None and cancel_token.is_cancelled:
            return await self._finish_cancelled(dependency_name, 0, started)

        if not self._health.is_healthy(dependency_name):
            logger.warning("%s is unhealthy, serving fallback", dependency_name)
            return await self._finish_fallback(
                dependency_name, FailureReason.CIRCUIT_BREAKER_OPEN,
                attempts=0, started=started, error=None,
            )

        last_error: Exception | None = None
        for attempt in range(1, attempts_allowed + 1):
            if cancel_token is not None and cancel_token.is_cancelled:
                return await self._finish_cancelled(dependency_name, attempt - 1, started)

            timeout_ms = self._policy.attempt_timeout_ms(
                self._health.avg_latency_ms(dependency_name)
            )
            logger.info(
                "Attempt %d/%d for %s (timeout=%.0fms)",
                attempt, attempts_allowed, dependency_name, timeout_ms,
            )
            t0 = time.monotonic()
            try:
                value = await self._attempt(
                    dependency_name, payload, timeout_ms / 1000, cancel_token,
                )
            except _AttemptCancelled:
                return await self._finish_cancelled(dependency_name, attempt, started)
            except Exception as e:
                last_error = e
                logger.warning(
                    "Attempt %d/%d for %s failed: %s",
                    attempt, attempts_allowed, dependency_name, e or type(e).__name__,
                )
                await self._health.record_outcome(dependency_name, False, _elapsed_ms(t0))

                if attempt < attempts_allowed:
                    delay_ms = self._policy.backoff_delay_ms(attempt)
                    if await self._pause(delay_ms / 1000, cancel_token):
                        return await self._finish_cancelled(
                            dependency_name, attempt, started,
                        )
                continue

            await self._health.record_outcome(dependency_name, True, _elapsed_ms(t0))
            self._cache.set(dependency_name, payload, value)
            result = ExecutionResult(
                dependency=dependency_name,
                success=True,
                value=value,
                attempts=attempt,
                latency_ms=_elapsed_ms(started),
            )
            await self._record(result, value)
            return result

        logger.error(
            "All %d attempts failed for %s, serving fallback",
            attempts_allowed, dependency_name,
        )
        return await self._finish_fallback(
            dependency_name, classify_error(last_error),
            attempts=attempts_allowed, started=started,
            error=_describe(last_error),
        )

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _attempt(
        self,
        dependency_name: str,
        payload: dict[str, Any],
        timeout_s: float,
        cancel_token: CancelToken | None,
    ) -> Any:
        """One downstream call raced against its timeout and the cancel token."""
        call = asyncio.ensure_future(
            self._invoker.invoke_dependency(dependency_name, payload)
        )
        waiters: set[asyncio.Future] = {call}
        cancel_wait = None
        if cancel_token is not None:
            cancel_wait = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if not call.done():
                call.cancel()

        if call in done:
            return call.result()
        if cancel_token is not None and cancel_token.is_cancelled:
            raise _AttemptCancelled()
        raise TimeoutError(
            f"{dependency_name} timeout after {timeout_s * 1000:.0f}ms"
        )

    async def _pause(self, delay_s: float, cancel_token: CancelToken | None) -> bool:
        """Backoff sleep. Returns True if the token fired during the sleep."""
        if cancel_token is None:
            await self._sleep(delay_s)
            return False

        sleeper = asyncio.ensure_future(self._sleep(delay_s))
        cancel_wait = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait(
                {sleeper, cancel_wait}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            sleeper.cancel()
            cancel_wait.cancel()
        return cancel_token.is_cancelled

    async def _finish_fallback(
        self,
        dependency_name: str,
        reason: FailureReason,
        attempts: int,
        started: float,
        error: str | None,
    ) -> ExecutionResult:
        template = await self._fallback_template(dependency_name, reason)
        result = ExecutionResult(
            dependency=dependency_name,
            success=False,
            value=template,
            fallback=True,
            reason=reason,
            attempts=attempts,
            latency_ms=_elapsed_ms(started),
            error=error,
        )
        await self._record(result, None)
        return result

    async def _finish_cancelled(
        self, dependency_name: str, attempts: int, started: float,
    ) -> ExecutionResult:
        logger.info("Execution of %s cancelled after %d attempt(s)", dependency_name, attempts)
        result = ExecutionResult(
            dependency=dependency_name,
            success=False,
            value={"response": self._unavailable_message, "fallback": True},
            fallback=True,
            reason=FailureReason.CANCELLED,
            attempts=attempts,
            latency_ms=_elapsed_ms(started),
            error="cancelled",
        )
        await self._record(result, None)
        return result

    async def _fallback_template(
        self, dependency_name: str, reason: FailureReason,
    ) -> dict[str, Any]:
        try:
            template = await self._fallbacks.get_fallback_response(
                dependency_name, reason.value,
            )
        except Exception as e:
            logger.error("Fallback lookup failed for %s: %s", dependency_name, e)
            template = None
        if template is None:
            return {"response": self._unavailable_message, "fallback": True}
        return template

    async def _record(self, result: ExecutionResult, value: Any) -> None:
        if self._telemetry is None:
            return
        tokens = value.get("tokens_used", 0) if isinstance(value, dict) else 0
        await self._telemetry.record(
            "resilience",
            result.status_code,
            result.latency_ms,
            tokens_used=tokens or 0,
            dependency=result.dependency,
            error_message=result.error,
            metadata={
                "attempts": result.attempts,
                "reason": result.reason.value if result.reason else None,
            },
        )


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)


def _describe(error: BaseException | None) -> str | None:
    if error is None:
        return None
    return str(error) or type(error).__name__
