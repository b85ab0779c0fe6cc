"""Exception hierarchy shared by the engine and its external clients."""

from __future__ import annotations


class ExchangeError(Exception):
    """Base exchange error."""


class ExchangeAPIError(ExchangeError):
    """Raised when exchange transport or request fails."""

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class DecisionServiceError(Exception):
    """Base decision service error."""


class DecisionServiceAPIError(DecisionServiceError):
    """Raised when decision service transport/request fails."""


class DecisionPayloadError(DecisionServiceError):
    """Raised when a decision payload violates its schema."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class ContractSpecsUnavailable(Exception):
    """No contract metadata for a symbol even after a refresh."""


class CycleStageError(Exception):
    """A decision stage failed or returned an unusable payload; the cycle is aborted."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class EngineStartupError(Exception):
    """Engine could not reach a safe starting state."""
