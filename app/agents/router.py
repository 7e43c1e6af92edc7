# =============================================================================
# Expert Router — Classifier-First Selection with Keyword Fallback
# =============================================================================
#
# Picks the expert that should answer a query, with a confidence score and
# ranked alternatives.
#
# DECISION FLOW:
#   active experts (score desc) ──▶ classifier healthy?
#        │                               │ yes
#        │                               ▼
#        │                        LLM JSON decision ──▶ validate ──▶ selection
#        │                               │ error / timeout
#        ▼                               ▼
#   no classifier ───────────────▶ keyword routing ──▶ selection
#
# VALIDATION: a classifier pick that is not an active expert is replaced by
# the highest-scored active expert at a fixed confidence (60 by default).
#
# KEYWORD ROUTING: each category scores one point per keyword that starts a
# word of the lowercased query. Most hits wins, first category on ties.
# Confidence is min(60 + 10 * hits, 85) with the defaults; with no hits
# the baseline expert is chosen at the default confidence (50).
#
# DESIGN DECISION: The classifier is a dependency like any other.
# Its outcomes are recorded in the Service Health Registry under
# CLASSIFIER_DEPENDENCY, so a failing classification API stops being
# called once its circuit opens and routing goes straight to keywords.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.agents.keywords import DEFAULT_KEYWORD_TABLE, KeywordTable, count_keyword_hits
from app.config import Settings
from app.errors import ClassificationError, NoActiveExpertsError
from app.models.domain import ExpertProfile
from app.services.health import ServiceHealthRegistry
from app.services.llm import LLMProvider
from app.services.store import DataStore

logger = logging.getLogger(__name__)

CLASSIFIER_DEPENDENCY = "classifier"
KEYWORD_MODEL = "fallback-deterministic"

# Keyword category → query_type reported in routing metadata
_QUERY_TYPES = {
    "tax_specialist": "tax",
    "news_interpreter": "news",
    "portfolio_advisor": "portfolio",
    "market_analyst": "market",
    "risk_assessor": "risk",
}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ClassificationResult:
    """Raw decision returned by a classification capability."""

    expert: str
    confidence: float
    alternatives: list[str] = field(default_factory=list)
    reasoning: str = ""
    query_type: str = "general"
    model_used: str | None = None
    tokens_used: int = 0


@dataclass
class RouteSelection:
    """Validated routing outcome consumed by the dispatcher."""

    expert: str
    confidence: float
    alternatives: list[str]
    reasoning: str
    query_type: str = "general"
    model_used: str | None = None
    tokens_used: int = 0
    used_fallback: bool = False   # keyword routing instead of the classifier
    substituted: bool = False     # classifier pick replaced by top-scored expert


class Classifier(Protocol):
    async def classify(
        self,
        query: str,
        experts: list[ExpertProfile],
        context: dict[str, Any],
    ) -> ClassificationResult: ...


# ---------------------------------------------------------------------------
# LLM Classification Capability
# ---------------------------------------------------------------------------

_CLASSIFIER_SYSTEM = (
    "Você é um roteador de especialistas em investimentos. "
    "Responda SEMPRE em JSON válido."
)


class LLMClassifier:
    """
    Asks the configured LLM for a JSON routing decision.

    Any provider error or unparsable answer is raised as
    ClassificationError; the router turns that into keyword routing.
    """

    def __init__(
        self,
        llm: LLMProvider,
        temperature: float = 0.3,
        max_tokens: int = 800,
    ) -> None:
        self._llm = llm
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def classify(
        self,
        query: str,
        experts: list[ExpertProfile],
        context: dict[str, Any],
    ) -> ClassificationResult:
        prompt = _build_routing_prompt(query, experts, context)
        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": prompt}],
                system=_CLASSIFIER_SYSTEM,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                json_mode=True,
            )
        except Exception as e:
            raise ClassificationError(f"classification call failed: {e}") from e

        decision = _parse_decision(response.content)
        return ClassificationResult(
            expert=str(decision.get("expert", "")),
            confidence=_as_float(decision.get("confidence"), 70.0),
            alternatives=[str(a) for a in decision.get("alternatives") or []],
            reasoning=str(decision.get("reasoning") or "Seleção automática"),
            query_type=str(decision.get("query_type") or "general"),
            model_used=response.model,
            tokens_used=response.total_tokens,
        )


def _build_routing_prompt(
    query: str, experts: list[ExpertProfile], context: dict[str, Any],
) -> str:
    expert_lines = "\n".join(
        f"- {e.name}: {e.description} (score: {e.performance_score:.1f})"
        for e in experts
    )
    return (
        "Você é um roteador inteligente especializado em investimentos "
        "brasileiros.\nSelecione o melhor especialista para responder a "
        "pergunta do usuário.\n\n"
        f"ESPECIALISTAS DISPONÍVEIS:\n{expert_lines}\n\n"
        f"CONTEXTO DO USUÁRIO:\n"
        f"{json.dumps(context, ensure_ascii=False, default=str)}\n\n"
        f'PERGUNTA: "{query}"\n\n'
        "INSTRUÇÕES:\n"
        "1. Analise a pergunta e o contexto\n"
        "2. Considere a expertise e performance de cada especialista\n"
        "3. Selecione o mais adequado com confiança de 0-100\n"
        "4. Sugira 2 alternativas se aplicável\n\n"
        "RESPONDA EM JSON VÁLIDO:\n"
        '{"expert": "nome_do_expert", "confidence": 85, '
        '"reasoning": "Explicação da escolha", '
        '"alternatives": ["expert2", "expert3"], '
        '"query_type": "portfolio|market|tax|news|general"}'
    )


_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _parse_decision(content: str) -> dict[str, Any]:
    """Extract the JSON object from the model output (code fences allowed)."""
    match = _JSON_OBJECT.search(content or "")
    if match is None:
        raise ClassificationError("classifier returned no JSON object")
    try:
        decision = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ClassificationError(f"classifier returned invalid JSON: {e}") from e
    if not isinstance(decision, dict):
        raise ClassificationError("classifier JSON is not an object")
    return decision


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class ExpertRouter:
    """
    Selects an expert for a query.

    Example:
        >>> router = ExpertRouter(store, classifier=None)
        >>> selection = await router.select_expert("Como está minha carteira?")
        >>> selection.expert, selection.confidence
        ('portfolio_advisor', 70.0)
    """

    def __init__(
        self,
        store: DataStore,
        classifier: Classifier | None = None,
        keyword_table: KeywordTable | None = None,
        health: ServiceHealthRegistry | None = None,
        default_expert: str = "portfolio_advisor",
        substitution_confidence: float = 60.0,
        keyword_default_confidence: float = 50.0,
        keyword_base_confidence: float = 60.0,
        keyword_step_confidence: float = 10.0,
        keyword_max_confidence: float = 85.0,
        classifier_timeout_s: float | None = 15.0,
        max_alternatives: int = 2,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._keywords = keyword_table if keyword_table is not None else dict(
            DEFAULT_KEYWORD_TABLE
        )
        self._health = health
        self._default_expert = default_expert
        self._substitution_confidence = substitution_confidence
        self._keyword_default_confidence = keyword_default_confidence
        self._keyword_base_confidence = keyword_base_confidence
        self._keyword_step_confidence = keyword_step_confidence
        self._keyword_max_confidence = keyword_max_confidence
        self._classifier_timeout_s = classifier_timeout_s
        self._max_alternatives = max_alternatives

    @classmethod
    def from_settings(
        cls,
        store: DataStore,
        config: Settings,
        classifier: Classifier | None = None,
        keyword_table: KeywordTable | None = None,
        health: ServiceHealthRegistry | None = None,
    ) -> ExpertRouter:
        return cls(
            store,
            classifier=classifier if config.classifier_enabled else None,
            keyword_table=keyword_table,
            health=health,
            default_expert=config.default_expert,
            substitution_confidence=config.substitution_confidence,
            keyword_default_confidence=config.keyword_default_confidence,
            keyword_base_confidence=config.keyword_base_confidence,
            keyword_step_confidence=config.keyword_step_confidence,
            keyword_max_confidence=config.keyword_max_confidence,
            classifier_timeout_s=config.classifier_timeout_s,
        )

    async def select_expert(
        self, query: str, context: dict[str, Any] | None = None,
    ) -> RouteSelection:
        """
        Route `query` to an active expert.

        Raises:
            NoActiveExpertsError: the catalog has no active expert.
        """
        context = context or {}
        experts = await self._store.get_active_experts()
        if not experts:
            raise NoActiveExpertsError("No active experts available")

        if self._classifier is not None and self._classifier_available():
            t0 = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self._classifier.classify(query, experts, context),
                    timeout=self._classifier_timeout_s,
                )
            except Exception as e:
                await self._record_classifier(False, t0)
                logger.warning(
                    "Classifier failed, using keyword routing: %s",
                    e or type(e).__name__,
                )
            else:
                await self._record_classifier(True, t0)
                return self._validate(result, experts)

        return self.keyword_route(query, experts)

    def keyword_route(
        self, query: str, experts: list[ExpertProfile],
    ) -> RouteSelection:
        """Deterministic keyword routing over `experts` (score-ordered)."""
        query_lower = query.lower()
        best_name, best_hits = self._default_expert, 0
        for name, words in self._keywords.items():
            hits = count_keyword_hits(query_lower, words)
            if hits > best_hits:
                best_name, best_hits = name, hits

        if best_hits:
            confidence = min(
                self._keyword_base_confidence + self._keyword_step_confidence * best_hits,
                self._keyword_max_confidence,
            )
            reasoning = f"Seleção por palavras-chave ({best_hits} correspondência(s))"
            query_type = _QUERY_TYPES.get(best_name, "general")
        else:
            confidence = self._keyword_default_confidence
            reasoning = "Nenhuma palavra-chave encontrada; especialista padrão"
            query_type = "general"

        names = [e.name for e in experts]
        if best_name not in names:
            logger.info(
                "Keyword pick %s is not active, substituting %s",
                best_name, names[0],
            )
            reasoning = f"{reasoning}; {best_name} inativo, substituído por {names[0]}"
            best_name = names[0]
            confidence = self._substitution_confidence

        logger.info(
            "Keyword routing selected %s (confidence=%.0f, hits=%d)",
            best_name, confidence, best_hits,
        )
        return RouteSelection(
            expert=best_name,
            confidence=confidence,
            alternatives=self._ranked_alternatives(best_name, names),
            reasoning=reasoning,
            query_type=query_type,
            model_used=KEYWORD_MODEL,
            tokens_used=0,
            used_fallback=True,
        )

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _validate(
        self, result: ClassificationResult, experts: list[ExpertProfile],
    ) -> RouteSelection:
        names = [e.name for e in experts]
        expert = result.expert
        confidence = max(0.0, min(100.0, result.confidence))
        reasoning = result.reasoning
        substituted = False

        if expert not in names:
            logger.warning(
                "Classifier picked unknown expert %r, substituting %s",
                expert, names[0],
            )
            reasoning = "Fallback para expert com melhor performance"
            expert = names[0]
            confidence = self._substitution_confidence
            substituted = True

        alternatives: list[str] = []
        for name in result.alternatives:
            if name in names and name != expert and name not in alternatives:
                alternatives.append(name)
        if not alternatives:
            alternatives = self._ranked_alternatives(expert, names)

        logger.info("Classifier selected %s (confidence=%.0f)", expert, confidence)
        return RouteSelection(
            expert=expert,
            confidence=confidence,
            alternatives=alternatives[: self._max_alternatives],
            reasoning=reasoning,
            query_type=result.query_type,
            model_used=result.model_used,
            tokens_used=result.tokens_used,
            substituted=substituted,
        )

    def _ranked_alternatives(self, selected: str, names: list[str]) -> list[str]:
        return [n for n in names if n != selected][: self._max_alternatives]

    def _classifier_available(self) -> bool:
        if self._health is None:
            return True
        if self._health.is_healthy(CLASSIFIER_DEPENDENCY):
            return True
        logger.warning("Classifier circuit open, using keyword routing")
        return False

    async def _record_classifier(self, success: bool, started: float) -> None:
        if self._health is None:
            return
        await self._health.record_outcome(
            CLASSIFIER_DEPENDENCY, success, (time.monotonic() - started) * 1000,
        )
