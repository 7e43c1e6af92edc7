# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (automatic 422 errors for malformed JSON or
#    wrong types)
# 2. OpenAPI documentation generation (visible at /docs)
#
# DESIGN DECISION: Missing query / function name is NOT a schema error.
# Those fields are optional here and checked by the routing core, which
# raises InvalidRequestError → HTTP 400. The voice client historically
# sent either `query` or `command`, and `userId` in camelCase, so both
# spellings are accepted through AliasChoices.
# =============================================================================

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CommandRequest(BaseModel):
    """
    Request body for POST /command - route and answer one user command.

    Example:
        {
            "query": "Como está minha carteira?",
            "user_id": "user-123",
            "context": {"hasPortfolio": true, "experience": "iniciante"}
        }
    """

    query: str | None = Field(
        default=None,
        max_length=4000,
        validation_alias=AliasChoices("query", "command"),
        description="Natural-language command (transcribed voice or typed text)",
        examples=["Como está minha carteira?"],
    )

    user_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("user_id", "userId"),
        description="Caller identifier, stored with the routing decision",
    )

    # Forwarded untouched to the classifier and the expert prompt
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="User context (portfolio flag, account type, experience...)",
    )

    model_config = ConfigDict(populate_by_name=True)


class ResilienceOptions(BaseModel):
    max_retries: int | None = Field(
        default=None,
        ge=1,
        le=10,
        description="Attempts before falling back (default from config)",
    )


class ResilienceRequest(BaseModel):
    """
    Request body for POST /resilience - run one named dependency.

    Example:
        {
            "function": "market_analyst",
            "payload": {"query": "Qual o preço da VALE3?"},
            "options": {"max_retries": 2}
        }
    """

    function: str | None = Field(
        default=None,
        description="Dependency name (an expert name)",
        examples=["market_analyst"],
    )
    payload: dict[str, Any] = Field(default_factory=dict)
    options: ResilienceOptions = Field(default_factory=ResilienceOptions)


class FeedbackRequest(BaseModel):
    """
    Request body for POST /feedback/{feedback_id} - rate an answer.

    Both ratings use a 1-5 scale; at least one must be given.
    """

    response_quality: int | None = Field(default=None, ge=1, le=5)
    user_satisfaction: int | None = Field(default=None, ge=1, le=5)
