"""Users, points ledger, redemptions, expiry and audit tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


LEDGER_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

ACTION_TYPES = (
    "order_placement",
    "order_complete",
    "purchase",
    "redemption",
    "redemption_reversal",
    "refund",
    "partial_refund",
    "full_refund",
    "refund_reversal",
    "admin_assignment",
    "admin_deduction",
    "admin_reset",
    "bonus",
)
LEDGER_STATUSES = ("pending", "earned", "redeemed", "expired", "refunded", "cancelled")
REDEMPTION_STATUSES = ("pending", "completed", "refunded", "cancelled")


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="client"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "points_ledger",
        sa.Column("id", LEDGER_ID, primary_key=True, autoincrement=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("product_id", sa.String(length=64), nullable=True),
        sa.Column("action_type", sa.Enum(*ACTION_TYPES, name="points_ledger_action_type"), nullable=False),
        sa.Column("points_amount", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*LEDGER_STATUSES, name="points_ledger_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("points_amount <> 0", name="ck_points_ledger_nonzero"),
    )
    op.create_index("ix_points_ledger_user_status", "points_ledger", ["user_id", "status"])
    op.create_index("ix_points_ledger_order", "points_ledger", ["order_id"])

    op.create_table(
        "points_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ledger_id", LEDGER_ID, sa.ForeignKey("points_ledger.id"), nullable=False, unique=True),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("conversion_rate", sa.Numeric(10, 4), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column(
            "status",
            sa.Enum(*REDEMPTION_STATUSES, name="points_redemption_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_points_redemptions_user_id", "points_redemptions", ["user_id"])
    op.create_index("ix_points_redemptions_order", "points_redemptions", ["order_id"])

    op.create_table(
        "points_expiry_rules",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("expiry_days", sa.Integer(), nullable=False),
        sa.Column("grace_days", sa.Integer(), nullable=False),
        sa.Column("action_types", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "inactive", name="points_expiry_rule_status"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("expiry_days >= 1", name="ck_points_expiry_rules_days"),
        sa.CheckConstraint("grace_days >= 0", name="ck_points_expiry_rules_grace"),
    )

    op.create_table(
        "points_expirations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ledger_id", LEDGER_ID, sa.ForeignKey("points_ledger.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "rule_id",
            _uuid(),
            sa.ForeignKey("points_expiry_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "status",
            sa.Enum("notified", "expired", "consumed", name="points_expiration_status"),
            nullable=False,
        ),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("ledger_id", "status", name="uq_points_expirations_ledger_status"),
    )
    op.create_index("ix_points_expirations_user_id", "points_expirations", ["user_id"])

    op.create_table(
        "order_points_state",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("order_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ledger_entry_id", LEDGER_ID, sa.ForeignKey("points_ledger.id"), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "refund_points_state",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("refund_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.Enum("full", "partial", name="points_refund_kind"), nullable=False),
        sa.Column("ledger_entry_id", LEDGER_ID, sa.ForeignKey("points_ledger.id"), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_refund_points_state_order_id", "refund_points_state", ["order_id"])

    op.create_table(
        "points_audit_log",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("admin_id", _uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "action_type",
            sa.Enum("assign_points", "deduct_points", "reset_points", name="points_admin_action_type"),
            nullable=False,
        ),
        sa.Column("points_involved", sa.Integer(), nullable=False),
        sa.Column("ledger_id", LEDGER_ID, sa.ForeignKey("points_ledger.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=False, server_default="0.0.0.0"),
        _timestamp("created_at"),
    )
    op.create_index("ix_points_audit_log_admin_id", "points_audit_log", ["admin_id"])
    op.create_index("ix_points_audit_log_user_id", "points_audit_log", ["user_id"])
    op.create_index("ix_points_audit_log_created", "points_audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_points_audit_log_created", table_name="points_audit_log")
    op.drop_index("ix_points_audit_log_user_id", table_name="points_audit_log")
    op.drop_index("ix_points_audit_log_admin_id", table_name="points_audit_log")
    op.drop_table("points_audit_log")
    op.drop_index("ix_refund_points_state_order_id", table_name="refund_points_state")
    op.drop_table("refund_points_state")
    op.drop_table("order_points_state")
    op.drop_index("ix_points_expirations_user_id", table_name="points_expirations")
    op.drop_table("points_expirations")
    op.drop_table("points_expiry_rules")
    op.drop_index("ix_points_redemptions_order", table_name="points_redemptions")
    op.drop_index("ix_points_redemptions_user_id", table_name="points_redemptions")
    op.drop_table("points_redemptions")
    op.drop_index("ix_points_ledger_order", table_name="points_ledger")
    op.drop_index("ix_points_ledger_user_status", table_name="points_ledger")
    op.drop_table("points_ledger")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_name in (
        "points_admin_action_type",
        "points_refund_kind",
        "points_expiration_status",
        "points_expiry_rule_status",
        "points_redemption_status",
        "points_ledger_status",
        "points_ledger_action_type",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
