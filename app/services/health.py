# =============================================================================
# Service Health Registry — Per-Dependency Circuit Breaker
# =============================================================================
#
# Tracks, for every downstream dependency name (an expert, the classifier,
# any named function run through the resilience executor):
#   - consecutive failures (reset on success)
#   - a rolling error rate that moves 1/window_size per outcome
#   - an exponentially smoothed latency
#   - circuit-breaker open/closed state and when it opened
#
# STATE MACHINE:
#   CLOSED ──(failures ≥ threshold OR error_rate ≥ threshold)──▶ OPEN
#   OPEN ──(reset_timeout elapsed)──▶ HALF-OPEN (calls admitted as trials)
#   HALF-OPEN ──success──▶ CLOSED
#   HALF-OPEN ──failure──▶ OPEN (reset timer re-armed)
#
# DESIGN DECISION: In-process state with per-key asyncio locks.
# Entries are the only cross-request mutable state besides expert scores.
# A lock per dependency serialises read-modify-write for that name without
# making unrelated dependencies wait on each other.
#
# DESIGN DECISION: Fail open. If reading state ever raises, is_healthy()
# answers True. Availability wins over strict enforcement.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum

from app.config import Settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Derived status of a dependency."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ServiceHealth:
    """Circuit state for one dependency name."""

    name: str
    consecutive_failures: int = 0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    circuit_breaker_open: bool = False
    circuit_breaker_opened_at: float | None = None  # registry clock seconds
    last_check: datetime | None = None
    degraded_error_rate: float = 0.3

    @property
    def status(self) -> HealthStatus:
        if self.circuit_breaker_open:
            return HealthStatus.UNHEALTHY
        if self.error_rate > self.degraded_error_rate:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for opening and re-admitting a dependency."""

    failure_threshold: int = 5
    reset_timeout_s: float = 60.0
    error_rate_threshold: float = 0.5
    window_size: int = 100
    latency_smoothing: float = 0.9
    degraded_error_rate: float = 0.3

    @classmethod
    def from_settings(cls, config: Settings) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=config.circuit_failure_threshold,
            reset_timeout_s=config.circuit_reset_timeout_s,
            error_rate_threshold=config.circuit_error_rate_threshold,
            window_size=config.health_window_size,
            latency_smoothing=config.health_latency_smoothing,
            degraded_error_rate=config.health_degraded_error_rate,
        )


class ServiceHealthRegistry:
    """
    Registry of ServiceHealth entries keyed by dependency name.

    Example:
        >>> registry = ServiceHealthRegistry()
        >>> await registry.record_outcome("news_interpreter", False, 1200)
        >>> registry.is_healthy("news_interpreter")
        True
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._entries: dict[str, ServiceHealth] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def is_healthy(self, name: str) -> bool:
        """
        Whether a call to `name` may be attempted.

        False only while the circuit is open and the reset timeout has not
        elapsed. Once it elapses the circuit is half-open and calls are
        admitted as trials.
        """
        try:
            entry = self._entries.get(name)
            if entry is None or not entry.circuit_breaker_open:
                return True

            opened_at = entry.circuit_breaker_opened_at or 0.0
            if self._clock() - opened_at >= self._config.reset_timeout_s:
                logger.info("Circuit breaker half-open for %s", name)
                return True

            logger.info("Circuit breaker OPEN for %s", name)
            return False
        except Exception as e:
            logger.error("Health check failed for %s, failing open: %s", name, e)
            return True

    async def record_outcome(
        self, name: str, success: bool, latency_ms: float,
    ) -> ServiceHealth:
        """
        Fold one call outcome into the entry for `name`.

        Returns a snapshot of the updated entry.
        """
        async with self._lock_for(name):
            entry = self._entry_for(name)
            step = 1.0 / self._config.window_size
            smoothing = self._config.latency_smoothing

            entry.avg_latency_ms = (
                entry.avg_latency_ms * smoothing + latency_ms * (1.0 - smoothing)
            )
            entry.last_check = datetime.now(UTC)

            if success:
                entry.consecutive_failures = 0
                entry.error_rate = max(0.0, entry.error_rate - step)
                if entry.circuit_breaker_open:
                    entry.circuit_breaker_open = False
                    entry.circuit_breaker_opened_at = None
                    logger.info("Circuit breaker CLOSED for %s", name)
            else:
                entry.consecutive_failures += 1
                entry.error_rate = min(1.0, entry.error_rate + step)
                tripped = (
                    entry.consecutive_failures >= self._config.failure_threshold
                    or entry.error_rate >= self._config.error_rate_threshold
                )
                if tripped and not entry.circuit_breaker_open:
                    entry.circuit_breaker_open = True
                    entry.circuit_breaker_opened_at = self._clock()
                    logger.error(
                        "Circuit breaker OPENED for %s "
                        "(failures=%d, error_rate=%.2f)",
                        name, entry.consecutive_failures, entry.error_rate,
                    )
                elif entry.circuit_breaker_open:
                    # Failed half-open trial: start a new cooldown
                    entry.circuit_breaker_opened_at = self._clock()

            return replace(entry)

    def get(self, name: str) -> ServiceHealth | None:
        """Snapshot of the entry for `name`, or None if never referenced."""
        entry = self._entries.get(name)
        return replace(entry) if entry else None

    def avg_latency_ms(self, name: str) -> float:
        entry = self._entries.get(name)
        return entry.avg_latency_ms if entry else 0.0

    def snapshot(self) -> list[ServiceHealth]:
        """Snapshots of every known dependency, sorted by name."""
        return [replace(self._entries[name]) for name in sorted(self._entries)]

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _entry_for(self, name: str) -> ServiceHealth:
        entry = self._entries.get(name)
        if entry is None:
            entry = ServiceHealth(
                name=name, degraded_error_rate=self._config.degraded_error_rate,
            )
            self._entries[name] = entry
        return entry

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock
