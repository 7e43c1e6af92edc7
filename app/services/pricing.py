# =============================================================================
# Provider Pricing Registry — Cost Estimation for LLM Providers
# =============================================================================
#
# Maps (provider_type, model_name) → per-token costs in USD.
# Used by the command dispatcher to fill `performance.cost_usd` and the
# `estimated_cost` column of every agent log row.
#
# DESIGN DECISION: Static dict rather than database or config file.
# Pricing changes rarely and a lookup here costs no I/O per request.
#
# DESIGN DECISION: Costs stored as USD per TOKEN (not per 1M tokens).
#   cost = input_cost_per_token * input_tokens  (no /1_000_000)
#
# DESIGN DECISION: estimate_cost() returns None for unknown models
# rather than 0.0. Unknown cost != zero cost. Free-tier models are listed
# explicitly with 0.0 so "free" and "unknown" stay distinguishable.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelPricing:
    """Per-token costs for a model."""

    input_cost_per_token: float    # USD per input token
    output_cost_per_token: float   # USD per output token


_FREE = 0.0

# ---------------------------------------------------------------------------
# Pricing Registry
# ---------------------------------------------------------------------------
# Keys are (provider_type, model_name) tuples. provider_type matches
# LLMProvider.provider_type: "anthropic" or "openai_compatible".
# ---------------------------------------------------------------------------

PRICING_REGISTRY: dict[tuple[str, str], ModelPricing] = {
    # --- Free tier (OpenRouter) ---
    ("openai_compatible", "qwen/qwen3-30b-a3b"): ModelPricing(_FREE, _FREE),
    ("openai_compatible", "qwen/qwen3-32b-instruct"): ModelPricing(_FREE, _FREE),
    ("openai_compatible", "qwen/qwen3-235b-a22b-thinking-2507"): ModelPricing(_FREE, _FREE),

    # --- Anthropic ---
    ("anthropic", "claude-sonnet-4-6"): ModelPricing(3.00 / 1_000_000, 15.00 / 1_000_000),
    ("anthropic", "claude-haiku-4-5"): ModelPricing(0.80 / 1_000_000, 4.00 / 1_000_000),

    # --- OpenAI ---
    ("openai_compatible", "gpt-4o"): ModelPricing(2.50 / 1_000_000, 10.00 / 1_000_000),
    ("openai_compatible", "gpt-4o-mini"): ModelPricing(0.15 / 1_000_000, 0.60 / 1_000_000),
    ("openai_compatible", "gpt-3.5-turbo"): ModelPricing(0.50 / 1_000_000, 1.50 / 1_000_000),

    # --- DeepSeek ---
    ("openai_compatible", "deepseek-chat"): ModelPricing(0.14 / 1_000_000, 0.28 / 1_000_000),

    # --- Qwen (Alibaba Cloud, paid) ---
    ("openai_compatible", "qwen-plus"): ModelPricing(0.11 / 1_000_000, 0.44 / 1_000_000),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def estimate_cost(
    provider_type: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float | None:
    """
    Calculate estimated cost in USD for a completion.

    Returns None if the model is not in the registry (unknown pricing).
    Callers should handle None gracefully - unknown cost != zero cost.
    """
    pricing = PRICING_REGISTRY.get((provider_type, model))
    if pricing is None:
        return None
    return (
        pricing.input_cost_per_token * input_tokens
        + pricing.output_cost_per_token * output_tokens
    )
