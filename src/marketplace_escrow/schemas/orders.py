"""Pydantic schemas for the orders API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from marketplace_escrow.domain.milestones import Amount
from marketplace_escrow.infrastructure.database.orm_models import Order
from marketplace_escrow.schemas.payments import CamelModel


class CreateOrderRequest(CamelModel):
    """Request body for creating an order; the caller becomes the buyer."""

    provider_ids: list[str] = Field(..., min_length=1)
    job_ids: list[str] = Field(default_factory=list)
    agreed_price: Decimal = Field(..., gt=0, decimal_places=2, examples=[500000])
    currency: str = Field(..., min_length=3, max_length=3, examples=["USD"])


class DisputeOrderRequest(CamelModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class OrderResponse(CamelModel):
    """Full order representation."""

    id: str
    buyer_id: str
    provider_ids: list[str]
    job_ids: list[str]
    agreed_price: Amount
    currency: str
    status: str
    escrow_funded: bool
    metadata: dict[str, Any] | None
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> OrderResponse:
        return cls(
            id=str(order.id),
            buyer_id=order.buyer_id,
            provider_ids=list(order.provider_ids),
            job_ids=list(order.job_ids),
            agreed_price=order.agreed_price,
            currency=order.currency,
            status=order.status,
            escrow_funded=order.escrow_funded,
            metadata=order.metadata_json,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
