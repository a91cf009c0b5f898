"""
Business error types for the contest engine.

Every error here is an expected, recoverable condition. The API layer turns
them into JSON responses; storage and connectivity failures are not wrapped
and propagate as-is.
"""

from typing import Any


class ArenaError(Exception):
    """Base exception for contest engine rule violations"""

    kind = "ArenaError"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "error": self.kind,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class InsufficientFunds(ArenaError):
    """Raised when a real or virtual wallet cannot cover an amount"""
    kind = "InsufficientFunds"
    status_code = 400


class ContestFull(ArenaError):
    kind = "ContestFull"
    status_code = 409


class ContestNotJoinable(ArenaError):
    kind = "ContestNotJoinable"
    status_code = 409


class ContestNotActive(ArenaError):
    """Raised when trading is attempted outside the ACTIVE phase"""
    kind = "ContestNotActive"
    status_code = 409


class AlreadyJoined(ArenaError):
    kind = "AlreadyJoined"
    status_code = 409


class AlreadyClosed(ArenaError):
    kind = "AlreadyClosed"
    status_code = 409


class MarketClosed(ArenaError):
    kind = "MarketClosed"
    status_code = 409


class TradeLimitExceeded(ArenaError):
    kind = "TradeLimitExceeded"
    status_code = 409


class PositionLimitExceeded(ArenaError):
    kind = "PositionLimitExceeded"
    status_code = 409


class InvalidDistribution(ArenaError):
    """Raised when a prize distribution over-allocates the pool or is malformed"""
    kind = "InvalidDistribution"
    status_code = 422


class InvalidContestSpec(ArenaError):
    kind = "InvalidContestSpec"
    status_code = 422


class InvalidStatusTransition(ArenaError):
    kind = "InvalidStatusTransition"
    status_code = 409


class InvalidAmount(ArenaError):
    kind = "InvalidAmount"
    status_code = 422


class NotFound(ArenaError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = ""):
        message = f"{resource} not found{f': {resource_id}' if resource_id else ''}"
        super().__init__(message, resource=resource, id=resource_id)
