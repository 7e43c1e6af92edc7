# =============================================================================
# Performance Feedback Loop — EMA Expert Scores
# =============================================================================
#
# Turns one execution's measured quality into a nudge on the expert's
# performance_score:
#
#   quality      = (response_quality ?? 3) * 20
#   speed        = max(0, 100 - response_time_ms / 50)
#   efficiency   = max(0, 100 - tokens_used / 20)
#   satisfaction = (user_satisfaction ?? 3) * 20
#
#   composite = Σ weight_i * sub_score_i          (weights sum to 1.0)
#   new_score = old * (1 - alpha) + composite * alpha
#
# Every sub-score is clamped to [0, 100], so the composite is too, and an
# EMA of two values in [0, 100] can never leave that range.
#
# Ratings that arrive after dispatch already applied the measured sample
# revise that contribution: new = old + alpha * (rated - applied).
#
# DESIGN DECISION: Per-expert asyncio.Lock around read-compute-write.
# Two feedback events for the same expert arriving together would
# otherwise both read the old score and one update would be lost.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from app.config import Settings
from app.services.store import DataStore

logger = logging.getLogger(__name__)

# Stand-ins when a measurement is missing
_NEUTRAL_RATING = 3
_DEFAULT_RESPONSE_TIME_MS = 2000
_DEFAULT_TOKENS_USED = 500


@dataclass
class FeedbackSample:
    """One execution's measurements. Ratings are on a 1-5 scale."""

    response_quality: int | None = None
    response_time_ms: int | None = None
    tokens_used: int | None = None
    user_satisfaction: int | None = None


@dataclass(frozen=True)
class FeedbackWeights:
    quality: float = 0.4
    speed: float = 0.3
    efficiency: float = 0.2
    satisfaction: float = 0.1

    @classmethod
    def from_settings(cls, config: Settings) -> FeedbackWeights:
        return cls(
            quality=config.feedback_weight_quality,
            speed=config.feedback_weight_speed,
            efficiency=config.feedback_weight_efficiency,
            satisfaction=config.feedback_weight_satisfaction,
        )

    def __post_init__(self) -> None:
        total = self.quality + self.speed + self.efficiency + self.satisfaction
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Feedback weights must sum to 1.0 (got {total:.4f})")


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def composite_score(sample: FeedbackSample, weights: FeedbackWeights) -> float:
    """Weighted 0-100 metric for a single sample."""
    quality = _NEUTRAL_RATING if sample.response_quality is None else sample.response_quality
    satisfaction = (
        _NEUTRAL_RATING if sample.user_satisfaction is None else sample.user_satisfaction
    )
    response_time = (
        _DEFAULT_RESPONSE_TIME_MS if sample.response_time_ms is None
        else sample.response_time_ms
    )
    tokens = _DEFAULT_TOKENS_USED if sample.tokens_used is None else sample.tokens_used

    return (
        _clamp(quality * 20) * weights.quality
        + _clamp(100 - response_time / 50) * weights.speed
        + _clamp(100 - tokens / 20) * weights.efficiency
        + _clamp(satisfaction * 20) * weights.satisfaction
    )


class PerformanceFeedbackLoop:
    """
    Applies feedback samples to expert scores in the data store.

    Example:
        >>> loop = PerformanceFeedbackLoop(store)
        >>> await loop.update_score("tax_specialist",
        ...     FeedbackSample(response_quality=5, response_time_ms=800))
        55.43
    """

    def __init__(
        self,
        store: DataStore,
        weights: FeedbackWeights | None = None,
        alpha: float = 0.15,
    ) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        self._store = store
        self._weights = weights or FeedbackWeights()
        self._alpha = alpha
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, store: DataStore, config: Settings) -> PerformanceFeedbackLoop:
        return cls(store, FeedbackWeights.from_settings(config), config.feedback_alpha)

    async def update_score(
        self, expert_name: str, sample: FeedbackSample,
    ) -> float | None:
        """
        Fold `sample` into the expert's score and persist it.

        Returns the new score, or None when the expert is unknown.
        """
        async with self._lock_for(expert_name):
            expert = await self._store.get_expert(expert_name)
            if expert is None:
                logger.warning("Score update skipped: unknown expert %s", expert_name)
                return None

            composite = composite_score(sample, self._weights)
            old_score = _clamp(expert.performance_score)
            new_score = _clamp(old_score * (1 - self._alpha) + composite * self._alpha)
            await self._store.update_expert_score(expert_name, new_score)

        logger.info(
            "Performance updated for %s: %.2f -> %.2f (composite=%.2f)",
            expert_name, old_score, new_score, composite,
        )
        return new_score

    async def revise_score(
        self, expert_name: str, applied: FeedbackSample, revised: FeedbackSample,
    ) -> float | None:
        """
        Replace an already-applied sample with a revised one.

        Used when ratings arrive for an execution whose measured sample was
        folded in at dispatch: the score moves by alpha times the composite
        difference instead of taking a second EMA step.
        """
        async with self._lock_for(expert_name):
            expert = await self._store.get_expert(expert_name)
            if expert is None:
                logger.warning("Score revision skipped: unknown expert %s", expert_name)
                return None

            delta = (
                composite_score(revised, self._weights)
                - composite_score(applied, self._weights)
            )
            old_score = _clamp(expert.performance_score)
            new_score = _clamp(old_score + delta * self._alpha)
            await self._store.update_expert_score(expert_name, new_score)

        logger.info(
            "Performance revised for %s: %.2f -> %.2f (delta=%.2f)",
            expert_name, old_score, new_score, delta,
        )
        return new_score

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock
