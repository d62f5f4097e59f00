"""Typed failures raised by the points ledger services."""

from __future__ import annotations

from typing import Any


class PointsError(Exception):
    """Base error carrying a machine code and a user-facing message."""

    default_code = "points_error"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(PointsError):
    default_code = "validation_error"


class InsufficientBalanceError(PointsError):
    default_code = "insufficient_balance"

    def __init__(self, *, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient points. Available: {available}, Requested: {requested}",
            details={"available": available, "requested": requested},
        )
        self.available = available
        self.requested = requested


class RedemptionLimitExceededError(PointsError):
    default_code = "redemption_limit_exceeded"


class InvalidTransitionError(PointsError):
    default_code = "invalid_transition"


class NotFoundError(PointsError):
    default_code = "not_found"


class PermissionDeniedError(PointsError):
    default_code = "permission_denied"


class LedgerSystemError(PointsError):
    """Storage or transaction failure; the message never echoes the driver error."""

    default_code = "system_error"

    def __init__(self, message: str = "Points ledger is temporarily unavailable") -> None:
        super().__init__(message)


__all__ = [
    "InsufficientBalanceError",
    "InvalidTransitionError",
    "LedgerSystemError",
    "NotFoundError",
    "PermissionDeniedError",
    "PointsError",
    "RedemptionLimitExceededError",
    "ValidationError",
]
