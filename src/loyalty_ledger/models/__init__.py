"""SQLAlchemy models package."""

from .points import (  # noqa: F401
    AdminActionType,
    ExpirationMarkerStatus,
    ExpiryRule,
    ExpiryRuleStatus,
    LedgerActionType,
    LedgerStatus,
    OrderPointsState,
    PointExpiration,
    PointRedemption,
    PointsAuditLog,
    PointsLedgerEntry,
    RedemptionStatus,
    RefundKind,
    RefundPointsState,
)
from .user import User, UserRoleEnum, UserStatusEnum  # noqa: F401
