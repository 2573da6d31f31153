"""Create orders and payments tables.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

json_type = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("provider_ids", json_type, nullable=False),
        sa.Column("job_ids", json_type, nullable=False),
        sa.Column("agreed_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("escrow_funded", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('active', 'delivered', 'completed', 'cancelled', 'disputed')",
            name="ck_order_valid_status",
        ),
        sa.CheckConstraint("agreed_price > 0", name="ck_order_positive_price"),
        sa.CheckConstraint("version >= 1", name="ck_order_version"),
    )
    op.create_index("idx_order_buyer", "orders", ["buyer_id"])
    op.create_index("idx_order_status", "orders", ["status"])
    op.create_index("idx_order_created_at", "orders", ["created_at"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_id",
            sa.Uuid(),
            sa.ForeignKey("orders.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("commission", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payment_gateway", sa.String(32), nullable=False),
        sa.Column("payment_gateway_ref", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="ck_payment_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        sa.CheckConstraint("commission >= 0", name="ck_payment_commission"),
    )
    op.create_index("idx_payment_order", "payments", ["order_id"])
    op.create_index(
        "uq_payment_gateway_ref", "payments", ["payment_gateway_ref"], unique=True
    )


def downgrade() -> None:
    op.drop_index("uq_payment_gateway_ref", table_name="payments")
    op.drop_index("idx_payment_order", table_name="payments")
    op.drop_table("payments")
    op.drop_index("idx_order_created_at", table_name="orders")
    op.drop_index("idx_order_status", table_name="orders")
    op.drop_index("idx_order_buyer", table_name="orders")
    op.drop_table("orders")
