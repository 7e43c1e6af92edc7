# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable AI Backend
# =============================================================================
#
# Provides a common interface for LLM completions, with concrete
# implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenRouter, Qwen, DeepSeek, OpenAI).
#
# Two consumers share one provider instance:
#   - LLMClassifier (app/agents/router.py)   - JSON routing decision
#   - LLMExpertExecutor (app/agents/experts.py) - the expert's answer
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Matches the DataStore pattern in store.py. Any class with the right
# `complete()` method works, including AsyncMock doubles in tests.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers.
# Using the anthropic and openai SDKs directly keeps request parameters
# (response_format, per-call model) under our control.
#
# DESIGN DECISION: Built once at startup, injected everywhere.
# build_llm_provider() is called from the application lifespan and the
# instance is passed to the classifier and executor. The SDK clients pool
# their own connections, so one instance serves all requests.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        - Claude via native Anthropic SDK
#   │   └── complete()           - system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider - Any OpenAI-compatible API
#   │   └── complete()           - system prompt as message role
#   └── build_llm_provider()     - factory, reads from config
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from app.config import Settings, settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "qwen/qwen3-30b-a3b")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    `provider_type` ("anthropic" or "openai_compatible") is used with the
    returned model name to look up pricing.
    """

    provider_type: str

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system" - use the system param).
            system: System prompt for the LLM. Handled differently per provider:
                - Anthropic: top-level `system=` kwarg
                - OpenAI: prepended as {"role": "system", ...} message
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).
            model: Override the model for this call only.
            json_mode: Ask the provider for a JSON object response where
                the API supports it.

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system". This is the
    opposite of OpenAI's pattern and a common source of bugs.

    There is no JSON response mode; `json_mode` only adds an instruction
    to the system prompt.
    """

    provider_type = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        config: Settings | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        config = config or settings
        resolved_key = api_key or config.llm_api_key or config.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": model or self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }

        if json_mode:
            system = (system or "") + "\n\nRespond with a single valid JSON object."

        # Anthropic: system prompt is a top-level kwarg, not a message
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenRouter, Qwen, DeepSeek, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI chat completions format.

    The default configuration targets the free-tier Qwen3 MoE model
    through OpenRouter. Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    provider_type = "openai_compatible"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        config: Settings | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        config = config or settings
        resolved_key = api_key or config.llm_api_key or config.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or config.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        kwargs: dict = {
            "model": model or self._model,
            "messages": all_messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**kwargs)

        content = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or kwargs["model"],
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


_KNOWN_PROVIDER_TYPES = {"anthropic", "openai_compatible"}


def build_llm_provider(
    config: Settings | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build the configured LLM provider.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider (OpenRouter, Qwen, etc.)

    Raises:
        ValueError: Unknown provider type or missing API key.
    """
    config = config or settings
    if config.llm_provider not in _KNOWN_PROVIDER_TYPES:
        raise ValueError(
            f"Unknown provider type '{config.llm_provider}'. "
            f"Supported types: {sorted(_KNOWN_PROVIDER_TYPES)}"
        )
    if config.llm_provider == "anthropic":
        return AnthropicProvider(config=config)
    return OpenAICompatibleProvider(config=config)
