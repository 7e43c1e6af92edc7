# =============================================================================
# Unit Tests — Service Health Registry
# =============================================================================
#
# Circuit-breaker state machine, rolling error rate, latency smoothing and
# the fail-open guarantee. A fake clock drives the reset timeout, so no
# test sleeps.
# =============================================================================

from __future__ import annotations

import asyncio

from app.config import Settings
from app.services.health import (
    CircuitBreakerConfig,
    HealthStatus,
    ServiceHealthRegistry,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _fail(registry: ServiceHealthRegistry, name: str, times: int) -> None:
    for _ in range(times):
        await registry.record_outcome(name, False, 100)


# ---------------------------------------------------------------------------
# Test: Circuit Breaker
# ---------------------------------------------------------------------------


class TestCircuitBreaker:
    """Opening, half-open trials and closing."""

    def test_unknown_dependency_is_healthy(self):
        registry = ServiceHealthRegistry()
        assert registry.is_healthy("never_seen") is True
        assert registry.get("never_seen") is None

    def test_opens_after_five_consecutive_failures(self):
        registry = ServiceHealthRegistry(clock=FakeClock())

        async def scenario():
            await _fail(registry, "news_interpreter", 4)
            assert registry.is_healthy("news_interpreter") is True
            await _fail(registry, "news_interpreter", 1)
            return registry.is_healthy("news_interpreter")

        assert _run(scenario()) is False
        entry = registry.get("news_interpreter")
        assert entry.circuit_breaker_open is True
        assert entry.consecutive_failures == 5
        assert entry.status is HealthStatus.UNHEALTHY

    def test_half_open_only_after_reset_timeout(self):
        clock = FakeClock()
        registry = ServiceHealthRegistry(clock=clock)
        _run(_fail(registry, "market_analyst", 5))

        clock.advance(59.9)
        assert registry.is_healthy("market_analyst") is False

        clock.advance(0.1)
        assert registry.is_healthy("market_analyst") is True

    def test_failed_trial_rearms_timer(self):
        clock = FakeClock()
        registry = ServiceHealthRegistry(clock=clock)
        _run(_fail(registry, "market_analyst", 5))

        clock.advance(60)
        assert registry.is_healthy("market_analyst") is True
        _run(_fail(registry, "market_analyst", 1))

        # New cooldown starts at the failed trial
        assert registry.is_healthy("market_analyst") is False
        clock.advance(60)
        assert registry.is_healthy("market_analyst") is True

    def test_success_closes_circuit(self):
        clock = FakeClock()
        registry = ServiceHealthRegistry(clock=clock)

        async def scenario():
            await _fail(registry, "tax_specialist", 5)
            clock.advance(60)
            return await registry.record_outcome("tax_specialist", True, 50)

        entry = _run(scenario())
        assert entry.circuit_breaker_open is False
        assert entry.circuit_breaker_opened_at is None
        assert entry.consecutive_failures == 0
        assert registry.is_healthy("tax_specialist") is True

    def test_success_resets_consecutive_failures(self):
        registry = ServiceHealthRegistry()

        async def scenario():
            await _fail(registry, "risk_assessor", 4)
            await registry.record_outcome("risk_assessor", True, 50)
            await _fail(registry, "risk_assessor", 4)

        _run(scenario())
        assert registry.is_healthy("risk_assessor") is True
        assert registry.get("risk_assessor").consecutive_failures == 4

    def test_error_rate_threshold_opens_circuit(self):
        config = CircuitBreakerConfig(
            failure_threshold=100, window_size=2, error_rate_threshold=0.5,
        )
        registry = ServiceHealthRegistry(config, clock=FakeClock())
        _run(_fail(registry, "news_interpreter", 1))
        assert registry.is_healthy("news_interpreter") is False

    def test_config_from_settings(self):
        config = CircuitBreakerConfig.from_settings(
            Settings(circuit_failure_threshold=3, circuit_reset_timeout_s=10)
        )
        assert config.failure_threshold == 3
        assert config.reset_timeout_s == 10


# ---------------------------------------------------------------------------
# Test: Metrics
# ---------------------------------------------------------------------------


class TestHealthMetrics:
    """Error rate, latency EMA and derived status."""

    def test_error_rate_moves_by_one_over_window(self):
        registry = ServiceHealthRegistry()

        async def scenario():
            await _fail(registry, "x", 3)
            first = registry.get("x").error_rate
            await registry.record_outcome("x", True, 10)
            return first, registry.get("x").error_rate

        after_failures, after_success = _run(scenario())
        assert abs(after_failures - 0.03) < 1e-9
        assert abs(after_success - 0.02) < 1e-9

    def test_error_rate_never_negative(self):
        registry = ServiceHealthRegistry()
        entry = _run(registry.record_outcome("x", True, 10))
        assert entry.error_rate == 0.0

    def test_latency_is_exponentially_smoothed(self):
        registry = ServiceHealthRegistry()

        async def scenario():
            await registry.record_outcome("x", True, 1000)
            first = registry.avg_latency_ms("x")
            await registry.record_outcome("x", True, 1000)
            return first, registry.avg_latency_ms("x")

        first, second = _run(scenario())
        assert abs(first - 100.0) < 1e-9
        assert abs(second - 190.0) < 1e-9

    def test_degraded_status_above_error_rate(self):
        config = CircuitBreakerConfig(
            failure_threshold=100, window_size=10, error_rate_threshold=0.9,
        )
        registry = ServiceHealthRegistry(config)
        _run(_fail(registry, "x", 4))
        entry = registry.get("x")
        assert entry.status is HealthStatus.DEGRADED
        assert registry.is_healthy("x") is True

    def test_concurrent_failures_are_not_lost(self):
        config = CircuitBreakerConfig(failure_threshold=1000)
        registry = ServiceHealthRegistry(config)

        async def scenario():
            await asyncio.gather(
                *(registry.record_outcome("x", False, 10) for _ in range(50))
            )

        _run(scenario())
        assert registry.get("x").consecutive_failures == 50

    def test_snapshot_returns_copies(self):
        registry = ServiceHealthRegistry()
        _run(_fail(registry, "b", 1))
        _run(_fail(registry, "a", 1))

        snapshot = registry.snapshot()
        assert [e.name for e in snapshot] == ["a", "b"]
        snapshot[0].consecutive_failures = 99
        assert registry.get("a").consecutive_failures == 1


class TestFailOpen:
    """is_healthy() answers True when state cannot be read."""

    def test_internal_error_fails_open(self):
        class BrokenEntries(dict):
            def get(self, key, default=None):
                raise RuntimeError("state corrupted")

        registry = ServiceHealthRegistry()
        registry._entries = BrokenEntries()
        assert registry.is_healthy("news_interpreter") is True
