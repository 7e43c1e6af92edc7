# =============================================================================
# Agents Package — Expert Routing and Command Orchestration
# =============================================================================
#   - keywords.py: versioned keyword table for deterministic routing
#   - router.py: ExpertRouter (LLM classifier first, keyword fallback)
#   - experts.py: LLM-backed expert execution capability
#   - orchestrator.py: LangGraph dispatcher - route → execute → record
# =============================================================================
