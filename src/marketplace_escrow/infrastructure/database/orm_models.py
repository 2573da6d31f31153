"""SQLAlchemy 2.0 ORM models for marketplace escrow.

Two tables:
    1. orders    - A buyer/provider agreement with its embedded milestone plan.
    2. payments  - One gateway collection per milestone (or per order).

Design decisions:
    - UUIDs as primary keys.
    - Decimal for money (no floating point rounding errors).
    - JSON for the milestone plan (JSONB on PostgreSQL).
    - An integer ``version`` on orders; every order write is conditional on it.
    - CHECK constraints on status columns to reject unknown values at DB level.
    - Unique index on the gateway transaction reference.
    - Neither table is deleted from at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _now() -> datetime:
    return datetime.now(UTC)


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _now()


# ---------------------------------------------------------------------------
# 1. orders
# ---------------------------------------------------------------------------
class Order(Base):
    """An agreed piece of work between a buyer and one or more providers."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="User id of the paying buyer",
    )
    provider_ids: Mapped[list[str]] = mapped_column(
        JsonType,
        nullable=False,
        default=list,
        comment="Provider user ids; the first entry receives released funds",
    )
    job_ids: Mapped[list[str]] = mapped_column(
        JsonType,
        nullable=False,
        default=list,
    )

    # --- Financials ---
    agreed_price: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        comment="Total price in the order currency",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    escrow_funded: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="True once every milestone has been collected",
    )

    # --- Lifecycle ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        comment="Current lifecycle state (guarded by OrderStateMachine)",
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JsonType,
        nullable=True,
        default=None,
        comment="Milestone plan plus refund / dispute details",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency token, bumped by every write",
    )

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now,
        onupdate=_now,
    )

    payments: Mapped[list[Payment]] = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.created_at.desc()",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'delivered', 'completed', 'cancelled', 'disputed')",
            name="ck_order_valid_status",
        ),
        CheckConstraint("agreed_price > 0", name="ck_order_positive_price"),
        CheckConstraint("version >= 1", name="ck_order_version"),
        Index("idx_order_buyer", "buyer_id"),
        Index("idx_order_status", "status"),
        Index("idx_order_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order id={self.id} status={self.status} "
            f"price={self.agreed_price} {self.currency} v{self.version}>"
        )


# ---------------------------------------------------------------------------
# 2. payments
# ---------------------------------------------------------------------------
class Payment(Base):
    """A single collection made through a payment gateway."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    commission: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=0,
        comment="Platform commission withheld on release",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
    )
    payment_gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_gateway_ref: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Gateway transaction id",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now,
        onupdate=_now,
    )

    order: Mapped[Order] = relationship("Order", back_populates="payments")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="ck_payment_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        CheckConstraint("commission >= 0", name="ck_payment_commission"),
        Index("idx_payment_order", "order_id"),
        Index("uq_payment_gateway_ref", "payment_gateway_ref", unique=True),
    )

    @property
    def order_ids(self) -> list[str]:
        """The order reference as a one-element list."""
        return [str(self.order_id)]

    def __repr__(self) -> str:
        return (
            f"<Payment id={self.id} order={self.order_id} status={self.status} "
            f"ref={self.payment_gateway_ref}>"
        )


event.listen(Payment, "before_update", _set_updated_at)
