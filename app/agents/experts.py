# =============================================================================
# Expert Executor — LLM-Backed Specialist Answers
# =============================================================================
#
# The expert execution capability: given an expert name, the user's query
# and context, produce {response, tokens_used, latency_ms}.
#
# Each expert is one catalog row. Its description and capabilities become
# the system prompt; its model_config map is interpreted HERE and nowhere
# else in the routing core:
#
#   model_config key   effect
#   ----------------   -------------------------------------------
#   model              per-expert model override
#   temperature        sampling temperature (default from config)
#   max_tokens         output token limit (default from config)
#   response_style     tone instruction in the system prompt
#
# DESIGN DECISION: Errors are raised, not turned into canned text.
# The resilience executor owns retries and fallback templates; an expert
# that hides its own failure would defeat the circuit breaker. Provider
# errors are re-raised as ExpertExecutionError with the provider message
# kept, so the executor can still tell timeouts from API errors.
# =============================================================================

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any

from app.errors import ExpertExecutionError, InvalidRequestError
from app.models.domain import ExpertProfile
from app.services.llm import LLMProvider
from app.services.store import DataStore

logger = logging.getLogger(__name__)


@dataclass
class ExpertResponse:
    """What one expert invocation produced."""

    expert: str
    response: str
    model: str
    tokens_used: int
    input_tokens: int
    output_tokens: int
    latency_ms: int


# ---------------------------------------------------------------------------
# Prompt Construction
# ---------------------------------------------------------------------------

_DEFAULT_STYLE = "profissional e didático"

_EXPERT_RULES = (
    "INSTRUÇÕES ESPECÍFICAS:\n"
    "- Foque no mercado brasileiro (B3, Bovespa, tickers nacionais)\n"
    "- Use terminologia em português\n"
    "- Seja prático e acionável\n"
    "- Cite fontes quando relevante\n"
    "- Considere o perfil de risco do usuário"
)


def build_system_prompt(expert: ExpertProfile, context: dict[str, Any]) -> str:
    style = expert.model_config.get("response_style") or _DEFAULT_STYLE
    capabilities = json.dumps(expert.capabilities, ensure_ascii=False, indent=2)
    prompt = (
        f"Você é {expert.description or expert.name} especializado no mercado "
        f"financeiro brasileiro.\n\n"
        f"SUAS CAPACIDADES:\n{capabilities}\n\n"
        f"ESTILO DE RESPOSTA: {style}\n\n"
        f"{_EXPERT_RULES}"
    )
    if context:
        prompt += (
            "\n\nCONTEXTO ADICIONAL:\n"
            + json.dumps(context, ensure_ascii=False, indent=2, default=str)
        )
    return prompt


def build_user_prompt(query: str) -> str:
    return (
        f'PERGUNTA DO USUÁRIO: "{query}"\n\n'
        "Por favor, forneça uma resposta completa, precisa e útil "
        "considerando:\n"
        "1. Especificidades do mercado brasileiro\n"
        "2. Contexto atual econômico\n"
        "3. Perfil do usuário fornecido\n"
        "4. Melhores práticas de investimento"
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class LLMExpertExecutor:
    """
    Runs experts from the catalog against the configured LLM provider.

    Also satisfies the resilience executor's DependencyInvoker protocol
    through invoke_dependency(), with payload {"query", "context"}.
    """

    def __init__(self, store: DataStore, llm: LLMProvider | None) -> None:
        self._store = store
        self._llm = llm

    async def invoke(
        self,
        expert_name: str,
        query: str,
        context: dict[str, Any] | None = None,
    ) -> ExpertResponse:
        """
        Ask `expert_name` to answer `query`.

        Raises:
            ExpertExecutionError: unknown expert, provider failure or an
                empty answer.
        """
        context = context or {}
        expert = await self._store.get_expert(expert_name)
        if expert is None:
            raise ExpertExecutionError(expert_name, "expert not found")
        if self._llm is None:
            raise ExpertExecutionError(expert_name, "no LLM provider configured")

        config = expert.model_config
        t0 = time.monotonic()
        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": build_user_prompt(query)}],
                system=build_system_prompt(expert, context),
                temperature=config.get("temperature"),
                max_tokens=config.get("max_tokens"),
                model=config.get("model"),
            )
        except Exception as e:
            raise ExpertExecutionError(
                expert_name, f"LLM API call failed: {e or type(e).__name__}",
            ) from e

        if not response.content.strip():
            raise ExpertExecutionError(expert_name, "empty response")

        latency_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "Expert %s answered: model=%s, tokens=%d+%d, latency=%dms",
            expert_name, response.model, response.input_tokens,
            response.output_tokens, latency_ms,
        )
        return ExpertResponse(
            expert=expert_name,
            response=response.content,
            model=response.model,
            tokens_used=response.total_tokens,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            latency_ms=latency_ms,
        )

    async def invoke_dependency(
        self, name: str, payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Resilience-executor entry point. Returns a JSON-able dict."""
        query = payload.get("query")
        if not query:
            raise InvalidRequestError(f"Payload for {name} has no query")
        result = await self.invoke(name, query, payload.get("context") or {})
        return asdict(result)
