# =============================================================================
# Default Catalog — Experts and Fallback Templates
# =============================================================================
#
# Seeds a fresh data store with the five specialist experts the keyword
# table knows about, plus per-expert fallback templates for every failure
# scenario the resilience executor can report.
#
# Seeding is idempotent: existing experts are left untouched (their
# performance_score is learned state), fallback templates are upserted.
# =============================================================================

from __future__ import annotations

import logging

from app.models.domain import ExpertProfile
from app.services.store import DataStore

logger = logging.getLogger(__name__)


DEFAULT_EXPERTS: list[ExpertProfile] = [
    ExpertProfile(
        name="portfolio_advisor",
        description="um consultor de carteira de investimentos",
        capabilities=["análise de carteira", "diversificação", "alocação de ativos", "rebalanceamento"],
        model_config={"temperature": 0.5, "max_tokens": 1500, "response_style": "consultivo e didático"},
        performance_score=80.0,
    ),
    ExpertProfile(
        name="market_analyst",
        description="um analista de mercado de ações e fundos",
        capabilities=["cotações", "análise técnica", "análise fundamentalista", "fundos imobiliários"],
        model_config={"temperature": 0.4, "max_tokens": 1500, "response_style": "analítico e objetivo"},
        performance_score=75.0,
    ),
    ExpertProfile(
        name="tax_specialist",
        description="um especialista em tributação de investimentos",
        capabilities=["imposto de renda", "come-cotas", "isenções", "declaração anual"],
        model_config={"temperature": 0.3, "max_tokens": 1200, "response_style": "preciso e normativo"},
        performance_score=70.0,
    ),
    ExpertProfile(
        name="news_interpreter",
        description="um intérprete de notícias econômicas e políticas",
        capabilities=["notícias de mercado", "indicadores econômicos", "política monetária"],
        model_config={"temperature": 0.6, "max_tokens": 1200, "response_style": "contextual e equilibrado"},
        performance_score=70.0,
    ),
    ExpertProfile(
        name="risk_assessor",
        description="um avaliador de risco e perfil de investidor",
        capabilities=["volatilidade", "perfil de risco", "proteção de capital", "cenários de perda"],
        model_config={"temperature": 0.4, "max_tokens": 1200, "response_style": "prudente e claro"},
        performance_score=70.0,
    ),
]

# scenario → message shown to the user
DEFAULT_FALLBACK_MESSAGES: dict[str, str] = {
    "circuit_breaker_open": (
        "Este especialista está temporariamente indisponível. "
        "Tente novamente em alguns minutos."
    ),
    "timeout": (
        "A análise demorou mais do que o esperado. "
        "Tente reformular a pergunta de forma mais curta."
    ),
    "api_error": (
        "Nosso provedor de análise está com instabilidade. "
        "Tente novamente em instantes."
    ),
    "default_error": "Serviço temporariamente indisponível",
}


async def seed_defaults(store: DataStore) -> int:
    """
    Insert missing default experts and upsert fallback templates.

    Returns the number of experts created.
    """
    created = 0
    for expert in DEFAULT_EXPERTS:
        if await store.get_expert(expert.name) is None:
            await store.upsert_expert(expert)
            created += 1

    for expert in DEFAULT_EXPERTS:
        for scenario, message in DEFAULT_FALLBACK_MESSAGES.items():
            await store.upsert_fallback_response(
                expert.name,
                scenario,
                {"response": message, "fallback": True, "scenario": scenario},
            )

    logger.info(
        "Seeded catalog: %d new expert(s), %d fallback template(s)",
        created, len(DEFAULT_EXPERTS) * len(DEFAULT_FALLBACK_MESSAGES),
    )
    return created
