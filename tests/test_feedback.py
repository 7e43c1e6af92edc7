# =============================================================================
# Unit Tests — Performance Feedback Loop
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from app.config import Settings
from app.models.domain import ExpertProfile
from app.services.feedback import (
    FeedbackSample,
    FeedbackWeights,
    PerformanceFeedbackLoop,
    composite_score,
)
from app.services.store import InMemoryDataStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _store(score: float = 50.0) -> InMemoryDataStore:
    return InMemoryDataStore([ExpertProfile(name="tax_specialist", performance_score=score)])


PERFECT = FeedbackSample(
    response_quality=5, response_time_ms=0, tokens_used=0, user_satisfaction=5,
)


class TestCompositeScore:
    """Weighted sub-scores and their defaults."""

    def test_missing_measurements_use_defaults(self):
        assert composite_score(FeedbackSample(), FeedbackWeights()) == pytest.approx(63.0)

    def test_perfect_sample(self):
        assert composite_score(PERFECT, FeedbackWeights()) == pytest.approx(100.0)

    def test_slow_expensive_answer_bottoms_out_speed_and_efficiency(self):
        sample = FeedbackSample(
            response_quality=5, response_time_ms=60_000, tokens_used=50_000,
            user_satisfaction=5,
        )
        assert composite_score(sample, FeedbackWeights()) == pytest.approx(50.0)

    def test_out_of_range_ratings_are_clamped(self):
        sample = FeedbackSample(
            response_quality=9, response_time_ms=-1000, tokens_used=0,
            user_satisfaction=9,
        )
        assert composite_score(sample, FeedbackWeights()) == pytest.approx(100.0)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError, match="sum to 1.0"):
            FeedbackWeights(quality=0.5, speed=0.5, efficiency=0.5, satisfaction=0.5)

    def test_settings_reject_bad_weights(self):
        with pytest.raises(ValidationError):
            Settings(feedback_weight_quality=0.9)

    def test_settings_reject_bad_alpha(self):
        with pytest.raises(ValidationError):
            Settings(feedback_alpha=0)


class TestUpdateScore:
    """EMA update against the data store."""

    def test_perfect_sample_moves_score_by_alpha(self):
        store = _store(50.0)
        loop = PerformanceFeedbackLoop(store)

        new_score = _run(loop.update_score("tax_specialist", PERFECT))

        assert new_score == pytest.approx(57.5)
        expert = _run(store.get_expert("tax_specialist"))
        assert expert.performance_score == pytest.approx(57.5)

    def test_new_score_lies_between_old_and_composite(self):
        loop = PerformanceFeedbackLoop(_store(90.0))
        sample = FeedbackSample(response_quality=2, response_time_ms=3000, tokens_used=800)
        composite = composite_score(sample, FeedbackWeights())

        new_score = _run(loop.update_score("tax_specialist", sample))
        assert composite < new_score < 90.0

    def test_score_stays_in_bounds(self):
        store = _store(100.0)
        loop = PerformanceFeedbackLoop(store, alpha=1.0)

        async def scenario():
            top = await loop.update_score("tax_specialist", PERFECT)
            bottom = await loop.update_score("tax_specialist", FeedbackSample(
                response_quality=0, response_time_ms=10**6,
                tokens_used=10**6, user_satisfaction=0,
            ))
            return top, bottom

        top, bottom = _run(scenario())
        assert top == pytest.approx(100.0)
        assert bottom == pytest.approx(0.0)

    def test_unknown_expert_is_skipped(self):
        store = _store()
        loop = PerformanceFeedbackLoop(store)
        assert _run(loop.update_score("ghost", PERFECT)) is None

    def test_from_settings_uses_configured_alpha(self):
        store = _store(50.0)
        loop = PerformanceFeedbackLoop.from_settings(store, Settings(feedback_alpha=0.5))
        assert _run(loop.update_score("tax_specialist", PERFECT)) == pytest.approx(75.0)

    def test_alpha_must_be_in_range(self):
        with pytest.raises(ValueError):
            PerformanceFeedbackLoop(_store(), alpha=0)
        with pytest.raises(ValueError):
            PerformanceFeedbackLoop(_store(), alpha=1.5)

    def test_concurrent_updates_are_not_lost(self):
        class SlowStore(InMemoryDataStore):
            async def get_expert(self, name):
                expert = await super().get_expert(name)
                await asyncio.sleep(0)
                return expert

        store = SlowStore([ExpertProfile(name="tax_specialist", performance_score=50.0)])
        loop = PerformanceFeedbackLoop(store)

        async def scenario():
            await asyncio.gather(
                loop.update_score("tax_specialist", PERFECT),
                loop.update_score("tax_specialist", PERFECT),
            )
            return await store.get_expert("tax_specialist")

        expert = _run(scenario())
        # 50 -> 57.5 -> 63.875 only if the second update saw the first
        assert expert.performance_score == pytest.approx(63.875)


class TestReviseScore:
    """Ratings that replace a sample already folded in at dispatch."""

    MEASURED = FeedbackSample(response_time_ms=1000, tokens_used=200)

    def test_rating_moves_score_by_alpha_times_difference(self):
        loop = PerformanceFeedbackLoop(_store(60.0))
        rated = FeedbackSample(
            response_quality=5, response_time_ms=1000, tokens_used=200, user_satisfaction=4,
        )

        new_score = _run(loop.revise_score("tax_specialist", self.MEASURED, rated))
        # quality (5-3)*20*0.4 + satisfaction (4-3)*20*0.1 = 18, times 0.15
        assert new_score == pytest.approx(62.7)

    def test_revision_is_not_a_second_ema_step(self):
        store = _store(60.0)
        loop = PerformanceFeedbackLoop(store)

        async def scenario():
            after_dispatch = await loop.update_score("tax_specialist", self.MEASURED)
            revised = await loop.revise_score("tax_specialist", self.MEASURED, self.MEASURED)
            return after_dispatch, revised

        after_dispatch, revised = _run(scenario())
        assert revised == pytest.approx(after_dispatch)

    def test_revision_stays_in_bounds(self):
        worst = FeedbackSample(response_quality=1, user_satisfaction=1)
        loop = PerformanceFeedbackLoop(_store(1.0), alpha=1.0)
        assert _run(loop.revise_score("tax_specialist", PERFECT, worst)) == 0.0

    def test_unknown_expert_is_skipped(self):
        loop = PerformanceFeedbackLoop(_store())
        assert _run(loop.revise_score("ghost", self.MEASURED, PERFECT)) is None
