# =============================================================================
# Unit Tests — Expert Router
# =============================================================================
#
# Classifier validation, keyword routing and the interaction with the
# classifier's circuit breaker. Classifiers are fakes; LLMClassifier is
# tested against an AsyncMock provider.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from app.agents.keywords import DEFAULT_KEYWORD_TABLE, count_keyword_hits, load_keyword_table
from app.agents.router import (
    CLASSIFIER_DEPENDENCY,
    KEYWORD_MODEL,
    ClassificationResult,
    ExpertRouter,
    LLMClassifier,
)
from app.errors import ClassificationError, NoActiveExpertsError
from app.models.domain import ExpertProfile
from app.services.health import ServiceHealthRegistry
from app.services.llm import LLMResponse
from app.services.store import InMemoryDataStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _experts(*skip: str) -> list[ExpertProfile]:
    catalog = [
        ExpertProfile(name="portfolio_advisor", description="carteira", performance_score=80),
        ExpertProfile(name="market_analyst", description="mercado", performance_score=75),
        ExpertProfile(name="tax_specialist", description="impostos", performance_score=70),
        ExpertProfile(name="news_interpreter", description="notícias", performance_score=70),
        ExpertProfile(name="risk_assessor", description="risco", performance_score=70),
    ]
    return [e for e in catalog if e.name not in skip]


class FakeClassifier:
    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def classify(self, query, experts, context):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# Test: Keyword Routing
# ---------------------------------------------------------------------------


class TestKeywordRouting:
    """Deterministic routing when no classifier is available."""

    def test_portfolio_question_routes_to_portfolio_advisor(self):
        router = ExpertRouter(InMemoryDataStore(_experts()))
        selection = _run(router.select_expert("Como está minha carteira?"))

        assert selection.expert == "portfolio_advisor"
        assert selection.confidence == 70
        assert selection.used_fallback is True
        assert selection.model_used == KEYWORD_MODEL
        assert selection.query_type == "portfolio"
        assert selection.alternatives == ["market_analyst", "tax_specialist"]

    def test_no_keyword_uses_default_expert(self):
        router = ExpertRouter(InMemoryDataStore(_experts()))
        selection = _run(router.select_expert("Olá, bom dia"))

        assert selection.expert == "portfolio_advisor"
        assert selection.confidence == 50
        assert selection.query_type == "general"

    def test_single_hit_scores_seventy(self):
        router = ExpertRouter(InMemoryDataStore(_experts()))
        selection = _run(router.select_expert("Quero diversificar"))

        assert selection.expert == "portfolio_advisor"
        assert selection.confidence == 70

    def test_confidence_grows_with_hits(self):
        router = ExpertRouter(InMemoryDataStore(_experts()))

        async def scenario():
            two = await router.select_expert("Qual o risco e a volatilidade?")
            three = await router.select_expert("Qual o risco e a volatilidade, posso ter perda?")
            return two, three

        two, three = _run(scenario())
        assert (two.expert, two.confidence) == ("risk_assessor", 80)
        assert (three.expert, three.confidence) == ("risk_assessor", 85)

    def test_confidence_is_capped(self):
        router = ExpertRouter(InMemoryDataStore(_experts()))
        selection = _run(router.select_expert(
            "risco volatilidade perda seguro conservador"
        ))
        assert selection.expert == "risk_assessor"
        assert selection.confidence == 85

    def test_tie_goes_to_first_category(self):
        router = ExpertRouter(InMemoryDataStore(_experts()))
        selection = _run(router.select_expert("imposto sobre notícia"))
        assert selection.expert == "tax_specialist"

    def test_inactive_winner_is_substituted(self):
        router = ExpertRouter(InMemoryDataStore(_experts("tax_specialist")))
        selection = _run(router.select_expert("imposto de renda"))

        assert selection.expert == "portfolio_advisor"
        assert selection.confidence == 60
        assert "tax_specialist" not in selection.alternatives

    def test_routing_is_deterministic(self):
        router = ExpertRouter(InMemoryDataStore(_experts()))

        async def scenario():
            first = await router.select_expert("cotação da PETR4")
            second = await router.select_expert("cotação da PETR4")
            return first, second

        first, second = _run(scenario())
        assert first == second
        assert first.expert == "market_analyst"

    def test_no_active_experts(self):
        router = ExpertRouter(InMemoryDataStore())
        with pytest.raises(NoActiveExpertsError):
            _run(router.select_expert("carteira"))


class TestKeywordTable:
    def test_stem_matches_word_start_only(self):
        assert count_keyword_hits("tributação de fundos", ["tribut"]) == 1
        assert count_keyword_hits("minha carteira", ["ir"]) == 0
        assert count_keyword_hits("declaração de ir", ["ir"]) == 1

    def test_each_keyword_counts_once(self):
        assert count_keyword_hits("risco risco risco", ["risco"]) == 1

    def test_missing_path_uses_builtin_table(self, tmp_path):
        assert load_keyword_table(None) == DEFAULT_KEYWORD_TABLE
        assert load_keyword_table(tmp_path / "absent.json") == DEFAULT_KEYWORD_TABLE

    def test_invalid_file_uses_builtin_table(self, tmp_path):
        path = tmp_path / "table.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_keyword_table(path) == DEFAULT_KEYWORD_TABLE

        path.write_text(json.dumps({"version": 1}), encoding="utf-8")
        assert load_keyword_table(path) == DEFAULT_KEYWORD_TABLE

    def test_file_table_is_lowercased(self, tmp_path):
        path = tmp_path / "table.json"
        path.write_text(
            json.dumps({"version": 2, "experts": {"crypto": ["Bitcoin", "ETH"]}}),
            encoding="utf-8",
        )
        assert load_keyword_table(path) == {"crypto": ["bitcoin", "eth"]}

    def test_shipped_file_matches_builtin(self):
        shipped = Path(__file__).resolve().parents[1] / "data" / "routing_keywords.json"
        assert load_keyword_table(shipped) == DEFAULT_KEYWORD_TABLE


# ---------------------------------------------------------------------------
# Test: Classifier Path
# ---------------------------------------------------------------------------


class TestClassifierRouting:
    """Validation of classifier output and fallback to keywords."""

    def test_valid_decision_is_used(self):
        classifier = FakeClassifier(ClassificationResult(
            expert="market_analyst", confidence=88,
            alternatives=["risk_assessor"], reasoning="cotação",
            query_type="market", model_used="qwen/qwen3-30b-a3b", tokens_used=120,
        ))
        router = ExpertRouter(InMemoryDataStore(_experts()), classifier=classifier)
        selection = _run(router.select_expert("Como está a VALE3?"))

        assert selection.expert == "market_analyst"
        assert selection.confidence == 88
        assert selection.alternatives == ["risk_assessor"]
        assert selection.used_fallback is False
        assert selection.tokens_used == 120

    def test_unknown_expert_is_replaced_by_top_scored(self):
        classifier = FakeClassifier(ClassificationResult(
            expert="crypto_guru", confidence=95,
            alternatives=["market_analyst", "ghost", "tax_specialist", "news_interpreter"],
        ))
        router = ExpertRouter(InMemoryDataStore(_experts()), classifier=classifier)
        selection = _run(router.select_expert("bitcoin"))

        assert selection.expert == "portfolio_advisor"
        assert selection.confidence == 60
        assert selection.substituted is True
        assert selection.reasoning == "Fallback para expert com melhor performance"
        assert selection.alternatives == ["market_analyst", "tax_specialist"]

    def test_missing_alternatives_are_filled_by_score(self):
        classifier = FakeClassifier(ClassificationResult(
            expert="tax_specialist", confidence=70, alternatives=["ghost"],
        ))
        router = ExpertRouter(InMemoryDataStore(_experts()), classifier=classifier)
        selection = _run(router.select_expert("IR"))
        assert selection.alternatives == ["portfolio_advisor", "market_analyst"]

    def test_confidence_is_clamped(self):
        high = FakeClassifier(ClassificationResult(expert="market_analyst", confidence=150))
        low = FakeClassifier(ClassificationResult(expert="market_analyst", confidence=-5))
        store = InMemoryDataStore(_experts())

        assert _run(ExpertRouter(store, classifier=high).select_expert("q")).confidence == 100
        assert _run(ExpertRouter(store, classifier=low).select_expert("q")).confidence == 0

    def test_classifier_error_falls_back_to_keywords(self):
        health = ServiceHealthRegistry()
        classifier = FakeClassifier(error=ClassificationError("bad json"))
        router = ExpertRouter(
            InMemoryDataStore(_experts()), classifier=classifier, health=health,
        )
        selection = _run(router.select_expert("Como está minha carteira?"))

        assert selection.expert == "portfolio_advisor"
        assert selection.confidence == 60
        assert selection.used_fallback is True
        assert health.get(CLASSIFIER_DEPENDENCY).consecutive_failures == 1

    def test_classifier_timeout_falls_back_to_keywords(self):
        classifier = FakeClassifier(
            ClassificationResult(expert="market_analyst", confidence=90), delay=1.0,
        )
        router = ExpertRouter(
            InMemoryDataStore(_experts()), classifier=classifier,
            classifier_timeout_s=0.01,
        )
        selection = _run(router.select_expert("cotação"))
        assert selection.used_fallback is True
        assert selection.expert == "market_analyst"
        assert selection.confidence == 60

    def test_open_classifier_circuit_skips_classifier(self):
        health = ServiceHealthRegistry()
        classifier = FakeClassifier(ClassificationResult(expert="tax_specialist", confidence=90))
        router = ExpertRouter(
            InMemoryDataStore(_experts()), classifier=classifier, health=health,
        )

        async def scenario():
            for _ in range(5):
                await health.record_outcome(CLASSIFIER_DEPENDENCY, False, 10)
            return await router.select_expert("Como está minha carteira?")

        selection = _run(scenario())
        assert classifier.calls == 0
        assert selection.used_fallback is True
        assert selection.expert == "portfolio_advisor"

    def test_success_is_recorded_for_classifier(self):
        health = ServiceHealthRegistry()
        classifier = FakeClassifier(ClassificationResult(expert="tax_specialist", confidence=90))
        router = ExpertRouter(
            InMemoryDataStore(_experts()), classifier=classifier, health=health,
        )
        _run(router.select_expert("IR"))
        assert health.get(CLASSIFIER_DEPENDENCY).consecutive_failures == 0


class TestLLMClassifier:
    """JSON extraction from the provider's answer."""

    def _llm(self, content: str) -> AsyncMock:
        llm = AsyncMock()
        llm.complete.return_value = LLMResponse(
            content=content, model="qwen/qwen3-30b-a3b",
            input_tokens=300, output_tokens=40,
        )
        return llm

    def test_parses_fenced_json(self):
        llm = self._llm(
            "```json\n"
            '{"expert": "market_analyst", "confidence": 88, '
            '"alternatives": ["risk_assessor"], "reasoning": "cotação", '
            '"query_type": "market"}\n'
            "```"
        )
        result = _run(LLMClassifier(llm).classify("VALE3?", _experts(), {}))

        assert result.expert == "market_analyst"
        assert result.confidence == 88
        assert result.alternatives == ["risk_assessor"]
        assert result.query_type == "market"
        assert result.tokens_used == 340
        assert llm.complete.call_args.kwargs["json_mode"] is True

    def test_missing_fields_get_defaults(self):
        llm = self._llm('{"expert": "tax_specialist"}')
        result = _run(LLMClassifier(llm).classify("IR", _experts(), {}))
        assert result.confidence == 70
        assert result.alternatives == []
        assert result.query_type == "general"

    def test_non_json_answer_raises(self):
        llm = self._llm("Eu escolheria o analista de mercado.")
        with pytest.raises(ClassificationError):
            _run(LLMClassifier(llm).classify("VALE3?", _experts(), {}))

    def test_invalid_json_raises(self):
        llm = self._llm('{"expert": market_analyst}')
        with pytest.raises(ClassificationError):
            _run(LLMClassifier(llm).classify("VALE3?", _experts(), {}))

    def test_provider_error_raises_classification_error(self):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("API rate limit")
        with pytest.raises(ClassificationError, match="API rate limit"):
            _run(LLMClassifier(llm).classify("VALE3?", _experts(), {}))

    def test_prompt_lists_experts_and_query(self):
        llm = self._llm('{"expert": "tax_specialist"}')
        _run(LLMClassifier(llm).classify("Quanto pago de IR?", _experts(), {"perfil": "moderado"}))

        prompt = llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "tax_specialist" in prompt
        assert "Quanto pago de IR?" in prompt
        assert "moderado" in prompt
