"""Record order/refund totals on guards and partial expiry consumption.

Revision ID: 20261019_02
Revises: 20261019_01
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


_ACTION_TYPE = "points_ledger_action_type"


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(f"ALTER TYPE {_ACTION_TYPE} ADD VALUE IF NOT EXISTS 'expiry'")

    op.add_column(
        "points_expirations",
        sa.Column("consumed_points", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column("order_points_state", sa.Column("order_total", sa.Numeric(12, 2), nullable=True))
    op.add_column("order_points_state", sa.Column("currency", sa.String(length=3), nullable=True))
    op.add_column("refund_points_state", sa.Column("refund_total", sa.Numeric(12, 2), nullable=True))


def downgrade() -> None:
    op.drop_column("refund_points_state", "refund_total")
    op.drop_column("order_points_state", "currency")
    op.drop_column("order_points_state", "order_total")
    op.drop_column("points_expirations", "consumed_points")
    # Postgres enum value removal is not supported without recreating the type.
