# =============================================================================
# Domain Exceptions
# =============================================================================
#
# Only InvalidRequestError is meant to reach a caller: everything else is
# absorbed by the router, the resilience executor or the dispatcher and
# turned into a degraded-but-valid result.
# =============================================================================


class RouterError(Exception):
    """Base class for all routing-core errors."""


class InvalidRequestError(RouterError, ValueError):
    """Malformed top-level input (missing query or dependency name)."""


class NoActiveExpertsError(RouterError):
    """The expert catalog has no active entry to route to."""


class ClassificationError(RouterError):
    """The classification capability failed or returned unusable output."""


class ExpertExecutionError(RouterError):
    """An expert could not produce a response."""

    def __init__(self, expert_name: str, message: str) -> None:
        super().__init__(f"Expert {expert_name}: {message}")
        self.expert_name = expert_name
