"""Points ledger, redemption, expiry and audit models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from loyalty_ledger.db.base import Base


def _enum_values(enum: type[Enum]) -> list[str]:
    return [member.value for member in enum]


LedgerId = BigInteger().with_variant(Integer, "sqlite")


class LedgerActionType(str, Enum):
    """Fixed vocabulary describing where a ledger entry came from."""

    ORDER_PLACEMENT = "order_placement"
    ORDER_COMPLETE = "order_complete"
    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    REDEMPTION_REVERSAL = "redemption_reversal"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    FULL_REFUND = "full_refund"
    REFUND_REVERSAL = "refund_reversal"
    ADMIN_ASSIGNMENT = "admin_assignment"
    ADMIN_DEDUCTION = "admin_deduction"
    ADMIN_RESET = "admin_reset"
    BONUS = "bonus"
    EXPIRY = "expiry"


class LedgerStatus(str, Enum):
    """Current disposition of a single ledger entry."""

    PENDING = "pending"
    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class ExpiryRuleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ExpirationMarkerStatus(str, Enum):
    NOTIFIED = "notified"
    EXPIRED = "expired"
    CONSUMED = "consumed"


class RefundKind(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class AdminActionType(str, Enum):
    ASSIGN = "assign_points"
    DEDUCT = "deduct_points"
    RESET = "reset_points"


class PointsLedgerEntry(Base):
    """Signed point transaction; only status and expiry may change after insert."""

    __tablename__ = "points_ledger"
    __table_args__ = (
        CheckConstraint("points_amount <> 0", name="ck_points_ledger_nonzero"),
        Index("ix_points_ledger_user_status", "user_id", "status"),
        Index("ix_points_ledger_order", "order_id"),
    )

    id = Column(LedgerId, primary_key=True, autoincrement=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(String(64), nullable=True)
    product_id = Column(String(64), nullable=True)
    action_type = Column(
        SqlEnum(LedgerActionType, name="points_ledger_action_type", values_callable=_enum_values),
        nullable=False,
    )
    points_amount = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(LedgerStatus, name="points_ledger_status", values_callable=_enum_values),
        nullable=False,
        default=LedgerStatus.PENDING,
        server_default=LedgerStatus.PENDING.value,
    )
    description = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class PointRedemption(Base):
    """Conversion of spent points into a discount, frozen at redemption time."""

    __tablename__ = "points_redemptions"
    __table_args__ = (Index("ix_points_redemptions_order", "order_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    ledger_id = Column(LedgerId, ForeignKey("points_ledger.id"), nullable=False, unique=True)
    order_id = Column(String(64), nullable=True)
    points = Column(Integer, nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    conversion_rate = Column(Numeric(10, 4), nullable=False)
    currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    status = Column(
        SqlEnum(RedemptionStatus, name="points_redemption_status", values_callable=_enum_values),
        nullable=False,
        default=RedemptionStatus.PENDING,
        server_default=RedemptionStatus.PENDING.value,
    )
    notes = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ExpiryRule(Base):
    """Prioritised rule describing when earned credits age out."""

    __tablename__ = "points_expiry_rules"
    __table_args__ = (
        CheckConstraint("expiry_days >= 1", name="ck_points_expiry_rules_days"),
        CheckConstraint("grace_days >= 0", name="ck_points_expiry_rules_grace"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False, unique=True)
    expiry_days = Column(Integer, nullable=False, default=365)
    grace_days = Column(Integer, nullable=False, default=30)
    action_types = Column(JSON, nullable=False, default=list)
    status = Column(
        SqlEnum(ExpiryRuleStatus, name="points_expiry_rule_status", values_callable=_enum_values),
        nullable=False,
        default=ExpiryRuleStatus.ACTIVE,
        server_default=ExpiryRuleStatus.ACTIVE.value,
    )
    priority = Column(Integer, nullable=False, default=0, server_default="0")
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class PointExpiration(Base):
    """Marker recording that a credit was warned about or aged out."""

    __tablename__ = "points_expirations"
    __table_args__ = (
        UniqueConstraint("ledger_id", "status", name="uq_points_expirations_ledger_status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    ledger_id = Column(LedgerId, ForeignKey("points_ledger.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("points_expiry_rules.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SqlEnum(ExpirationMarkerStatus, name="points_expiration_status", values_callable=_enum_values),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    consumed_points = Column(Integer, nullable=False, default=0, server_default="0")
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OrderPointsState(Base):
    """Per-order idempotency guard holding the placement entry reference."""

    __tablename__ = "order_points_state"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_id = Column(String(64), nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ledger_entry_id = Column(LedgerId, ForeignKey("points_ledger.id"), nullable=True)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    order_total = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class RefundPointsState(Base):
    """Per-refund idempotency guard for deductions and their reversal."""

    __tablename__ = "refund_points_state"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    refund_id = Column(String(64), nullable=False, unique=True)
    order_id = Column(String(64), nullable=False, index=True)
    kind = Column(SqlEnum(RefundKind, name="points_refund_kind", values_callable=_enum_values), nullable=False)
    ledger_entry_id = Column(LedgerId, ForeignKey("points_ledger.id"), nullable=True)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    refund_total = Column(Numeric(12, 2), nullable=True)
    reversed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PointsAuditLog(Base):
    """Mandatory audit trail for manual point adjustments."""

    __tablename__ = "points_audit_log"
    __table_args__ = (Index("ix_points_audit_log_created", "created_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    admin_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    action_type = Column(
        SqlEnum(AdminActionType, name="points_admin_action_type", values_callable=_enum_values),
        nullable=False,
    )
    points_involved = Column(Integer, nullable=False, default=0)
    ledger_id = Column(LedgerId, ForeignKey("points_ledger.id"), nullable=True)
    notes = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=False, default="0.0.0.0", server_default="0.0.0.0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
