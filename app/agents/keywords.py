# =============================================================================
# Keyword Routing Table — Deterministic Fallback Vocabulary
# =============================================================================
#
# Maps each expert category to the Portuguese/English stems that signal it.
# Used only when the classification capability is disabled or fails.
#
# DESIGN DECISION: Versioned JSON file with a built-in default.
# The vocabularies need tuning without a redeploy, so the router reads
# `keyword_table_path` (data/routing_keywords.json) at startup. The same
# table is embedded here so a missing or unreadable file degrades to the
# shipped vocabulary instead of breaking startup.
#
# FILE FORMAT:
#   {"version": 1, "experts": {"tax_specialist": ["imposto", ...], ...}}
#
# Order matters: on a tie in hit count the first category listed wins.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

KeywordTable = dict[str, list[str]]

DEFAULT_KEYWORD_TABLE: KeywordTable = {
    "tax_specialist": ["imposto", "tribut", "ir", "taxa", "deduç"],
    "news_interpreter": ["notícia", "news", "mercado", "economia", "política"],
    "portfolio_advisor": ["carteira", "portfólio", "investir", "aplicar", "diversificar"],
    "market_analyst": ["preço", "cotação", "ação", "fundo", "vale", "petr", "itub"],
    "risk_assessor": ["risco", "volatilidade", "perda", "segur", "conservador"],
}


def load_keyword_table(path: str | Path | None) -> KeywordTable:
    """
    Read a keyword table from `path`, falling back to the built-in one.

    Relative paths are resolved against the current working directory.
    """
    if not path:
        return dict(DEFAULT_KEYWORD_TABLE)

    table_path = Path(path)
    try:
        raw = json.loads(table_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("Keyword table %s not found, using built-in table", table_path)
        return dict(DEFAULT_KEYWORD_TABLE)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Could not read keyword table %s: %s", table_path, e)
        return dict(DEFAULT_KEYWORD_TABLE)

    experts = raw.get("experts") if isinstance(raw, dict) else None
    if not isinstance(experts, dict) or not experts:
        logger.error("Keyword table %s has no 'experts' mapping", table_path)
        return dict(DEFAULT_KEYWORD_TABLE)

    table = {
        str(name): [str(word).lower() for word in words]
        for name, words in experts.items()
        if isinstance(words, list)
    }
    logger.info(
        "Loaded keyword table %s (version=%s, %d categories)",
        table_path, raw.get("version", "n/a"), len(table),
    )
    return table


def count_keyword_hits(query_lower: str, keywords: list[str]) -> int:
    """
    Number of keywords that start a word in the query.

    Matching is on word starts so stems like "tribut" catch "tributação"
    while short stems like "ir" do not match inside "carteira".
    """
    return sum(
        1 for word in keywords
        if re.search(r"\b" + re.escape(word), query_lower)
    )
