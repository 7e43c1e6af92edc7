# =============================================================================
# Unit Tests — Resilience Executor
# =============================================================================
#
# The downstream dependency is a scripted fake; backoff sleeps are recorded
# instead of awaited, so retry timing is asserted exactly without making
# the suite slow.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from app.errors import InvalidRequestError
from app.services.cache import ResponseCache
from app.services.health import ServiceHealthRegistry
from app.services.resilience import (
    CancelToken,
    FailureReason,
    ResilienceExecutor,
    RetryPolicy,
    classify_error,
)
from app.services.store import InMemoryDataStore
from app.services.telemetry import TelemetryRecorder


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class ScriptedInvoker:
    """
    Replays a script of outcomes, one per call.

    Each step is either a value to return, an exception to raise, or
    the string "hang" (never completes).
    """

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls: list[tuple[str, dict]] = []

    async def invoke_dependency(self, name, payload):
        self.calls.append((name, payload))
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if step == "hang":
            await asyncio.sleep(3600)
        if isinstance(step, BaseException):
            raise step
        return step


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _build(invoker, store=None, health=None, policy=None, sleep=None):
    store = store or InMemoryDataStore()
    health = health or ServiceHealthRegistry()
    sleeper = sleep or RecordingSleep()
    executor = ResilienceExecutor(
        health,
        ResponseCache(),
        invoker,
        store,
        telemetry=TelemetryRecorder(store),
        policy=policy,
        sleep=sleeper,
    )
    return executor, store, health, sleeper


# ---------------------------------------------------------------------------
# Test: Retry Policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    """Backoff curve and adaptive timeout clamp."""

    def test_backoff_doubles_up_to_cap(self):
        policy = RetryPolicy()
        delays = [policy.backoff_delay_ms(k) for k in range(1, 7)]
        assert delays == [1000, 2000, 4000, 8000, 10000, 10000]

    def test_unseen_dependency_gets_default_baseline(self):
        assert RetryPolicy().attempt_timeout_ms(0.0) == 15000

    def test_timeout_is_clamped(self):
        policy = RetryPolicy()
        assert policy.attempt_timeout_ms(100) == 5000
        assert policy.attempt_timeout_ms(4000) == 12000
        assert policy.attempt_timeout_ms(50000) == 30000


class TestClassifyError:
    def test_timeout_error_type(self):
        assert classify_error(TimeoutError()) is FailureReason.TIMEOUT

    def test_timeout_in_message(self):
        assert classify_error(RuntimeError("Request timed out")) is FailureReason.TIMEOUT
        assert classify_error(RuntimeError("read timeout")) is FailureReason.TIMEOUT

    def test_api_word(self):
        assert classify_error(RuntimeError("OpenAI API error 500")) is FailureReason.API_ERROR

    def test_api_inside_other_word_is_not_api_error(self):
        assert classify_error(RuntimeError("rapid failure")) is FailureReason.DEFAULT_ERROR

    def test_no_error(self):
        assert classify_error(None) is FailureReason.DEFAULT_ERROR


# ---------------------------------------------------------------------------
# Test: Execution
# ---------------------------------------------------------------------------


class TestExecute:
    """Success, retries, fallbacks and the cache fast path."""

    def test_success_records_health_cache_and_telemetry(self):
        invoker = ScriptedInvoker({"response": "ok", "tokens_used": 42})
        executor, store, health, _ = _build(invoker)

        result = _run(executor.execute("market_analyst", {"query": "PETR4"}))

        assert result.success is True
        assert result.value == {"response": "ok", "tokens_used": 42}
        assert result.attempts == 1
        assert result.status_code == 200
        assert health.get("market_analyst").consecutive_failures == 0

        [row] = store.agent_logs
        assert row.function_name == "resilience"
        assert row.dependency == "market_analyst"
        assert row.status_code == 200
        assert row.tokens_used == 42
        assert row.metadata == {"attempts": 1, "reason": None}

    def test_second_call_is_served_from_cache(self):
        invoker = ScriptedInvoker({"response": "ok"})
        executor, store, _, _ = _build(invoker)

        async def scenario():
            first = await executor.execute("market_analyst", {"query": "PETR4"})
            second = await executor.execute("market_analyst", {"query": "PETR4"})
            return first, second

        first, second = _run(scenario())
        assert len(invoker.calls) == 1
        assert second.from_cache is True
        assert second.value == first.value
        assert len(store.agent_logs) == 1

    def test_cache_is_served_even_when_circuit_is_open(self):
        invoker = ScriptedInvoker({"response": "ok"})
        executor, _, health, _ = _build(invoker)

        async def scenario():
            await executor.execute("market_analyst", {"query": "PETR4"})
            for _ in range(5):
                await health.record_outcome("market_analyst", False, 10)
            return await executor.execute("market_analyst", {"query": "PETR4"})

        result = _run(scenario())
        assert result.from_cache is True
        assert result.success is True

    def test_open_circuit_skips_all_attempts(self):
        invoker = ScriptedInvoker({"response": "should not be called"})
        store = InMemoryDataStore()
        template = {"response": "Especialista indisponível", "fallback": True}

        async def scenario():
            executor, _, health, _ = _build(invoker, store=store)
            await store.upsert_fallback_response(
                "news_interpreter", "circuit_breaker_open", template,
            )
            for _ in range(5):
                await health.record_outcome("news_interpreter", False, 10)
            return await executor.execute("news_interpreter", {"query": "Selic"})

        result = _run(scenario())
        assert invoker.calls == []
        assert result.success is False
        assert result.fallback is True
        assert result.reason is FailureReason.CIRCUIT_BREAKER_OPEN
        assert result.value == template
        assert result.attempts == 0
        assert result.status_code == 503
        assert store.agent_logs[-1].status_code == 503

    def test_hung_attempt_times_out_then_retry_succeeds(self):
        invoker = ScriptedInvoker("hang", {"response": "ok"})
        policy = RetryPolicy(timeout_min_ms=10, timeout_max_ms=50, default_latency_ms=10)
        executor, _, health, sleeper = _build(invoker, policy=policy)

        result = _run(executor.execute("market_analyst", {"query": "VALE3"}))

        assert result.success is True
        assert result.attempts == 2
        assert sleeper.delays == [1.0]
        assert health.get("market_analyst").consecutive_failures == 0

    def test_exhausted_retries_serve_classified_fallback(self):
        invoker = ScriptedInvoker(RuntimeError("upstream API returned 500"))
        executor, store, health, sleeper = _build(invoker)

        result = _run(executor.execute("tax_specialist", {"query": "IR"}))

        assert len(invoker.calls) == 3
        assert sleeper.delays == [1.0, 2.0]
        assert result.success is False
        assert result.reason is FailureReason.API_ERROR
        assert result.status_code == 502
        assert result.attempts == 3
        assert result.error == "upstream API returned 500"
        assert result.value == {
            "response": "Serviço temporariamente indisponível",
            "fallback": True,
        }
        assert health.get("tax_specialist").consecutive_failures == 3
        assert store.agent_logs[-1].metadata["reason"] == "api_error"

    def test_timeout_message_maps_to_timeout_template(self):
        invoker = ScriptedInvoker(RuntimeError("connection timeout"))
        store = InMemoryDataStore()

        async def scenario():
            executor, _, _, _ = _build(invoker, store=store)
            await store.upsert_fallback_response(
                "tax_specialist", "timeout", {"response": "demorou", "fallback": True},
            )
            return await executor.execute("tax_specialist", {"query": "IR"}, max_retries=1)

        result = _run(scenario())
        assert result.reason is FailureReason.TIMEOUT
        assert result.status_code == 504
        assert result.value["response"] == "demorou"

    def test_single_attempt_does_not_back_off(self):
        invoker = ScriptedInvoker(RuntimeError("boom"))
        executor, _, _, sleeper = _build(invoker)

        result = _run(executor.execute("x", {"query": "q"}, max_retries=1))
        assert result.reason is FailureReason.DEFAULT_ERROR
        assert sleeper.delays == []

    def test_broken_fallback_lookup_serves_generic_message(self):
        class BrokenFallbacks:
            async def get_fallback_response(self, function_name, scenario):
                raise RuntimeError("database down")

        invoker = ScriptedInvoker(RuntimeError("boom"))
        executor = ResilienceExecutor(
            ServiceHealthRegistry(), ResponseCache(), invoker, BrokenFallbacks(),
            sleep=RecordingSleep(),
        )
        result = _run(executor.execute("x", {"query": "q"}, max_retries=1))
        assert result.value["response"] == "Serviço temporariamente indisponível"
        assert result.value["fallback"] is True

    def test_missing_dependency_name_is_rejected(self):
        executor, _, _, _ = _build(ScriptedInvoker("ok"))
        with pytest.raises(InvalidRequestError):
            _run(executor.execute("", {"query": "q"}))

    def test_max_retries_must_be_positive(self):
        executor, _, _, _ = _build(ScriptedInvoker("ok"))
        with pytest.raises(InvalidRequestError):
            _run(executor.execute("x", {"query": "q"}, max_retries=0))


# ---------------------------------------------------------------------------
# Test: Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    """CancelToken stops in-flight attempts and pending backoffs."""

    def test_cancel_before_start_makes_no_attempt(self):
        invoker = ScriptedInvoker({"response": "ok"})
        executor, _, _, _ = _build(invoker)

        async def scenario():
            token = CancelToken()
            token.cancel("client went away")
            return await executor.execute("x", {"query": "q"}, cancel_token=token)

        result = _run(scenario())
        assert invoker.calls == []
        assert result.cancelled is True
        assert result.attempts == 0
        assert result.status_code == 499

    def test_cancel_interrupts_in_flight_attempt(self):
        invoker = ScriptedInvoker("hang")
        executor, _, _, sleeper = _build(invoker)

        async def scenario():
            token = CancelToken()
            asyncio.get_running_loop().call_later(0.02, token.cancel)
            return await executor.execute("x", {"query": "q"}, cancel_token=token)

        result = _run(scenario())
        assert result.cancelled is True
        assert result.attempts == 1
        assert len(invoker.calls) == 1
        assert sleeper.delays == []

    def test_cancel_interrupts_backoff(self):
        invoker = ScriptedInvoker(RuntimeError("boom"))
        executor, _, _, _ = _build(invoker, sleep=asyncio.sleep)

        async def scenario():
            token = CancelToken()
            asyncio.get_running_loop().call_later(0.02, token.cancel)
            return await executor.execute("x", {"query": "q"}, cancel_token=token)

        result = _run(scenario())
        assert result.cancelled is True
        assert result.attempts == 1
        assert len(invoker.calls) == 1

    def test_cancel_is_idempotent(self):
        async def scenario():
            token = CancelToken()
            return token.cancel("first"), token.cancel("second"), token.reason

        assert _run(scenario()) == (True, False, "first")
