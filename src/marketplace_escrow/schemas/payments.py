"""Pydantic schemas for the payments and webhooks API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models and the service result types to keep clean
boundaries between the API, service and database layers. JSON keys are
camelCase.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marketplace_escrow.domain.milestones import Amount, Milestone
from marketplace_escrow.infrastructure.database.orm_models import Payment


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class InitiatePaymentBody(CamelModel):
    """Request body for collecting the first or second milestone."""

    order_id: uuid.UUID = Field(..., description="Order to collect payment for")


class ReleasePaymentBody(CamelModel):
    """Request body for releasing escrowed funds to the provider."""

    order_id: uuid.UUID
    milestone_number: int | None = Field(
        default=None,
        ge=1,
        le=2,
        description="Release only this milestone; all paid milestones when omitted",
    )


class RefundPaymentBody(CamelModel):
    """Request body for refunding a cancelled or disputed order."""

    order_id: uuid.UUID
    reason: str = Field(..., min_length=1, max_length=2000)


class WebhookPayload(CamelModel):
    """Body of a gateway webhook delivery.

    ``event`` is kept as a plain string so that unknown event types can be
    acknowledged instead of rejected.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    event: str
    transaction_id: str
    reference: str = ""
    amount: Decimal | None = None
    currency: str = ""
    status: str = ""
    timestamp: str = ""
    signature: str = ""
    metadata: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowPaymentResponse(CamelModel):
    """Checkout details for a milestone collection."""

    success: bool = True
    payment_url: str
    transaction_id: str
    payment_id: str
    milestones: list[Milestone]
    requires_second_payment: bool


class ReleasedMilestoneResponse(CamelModel):
    milestone_number: int
    amount: Amount
    commission: Amount
    transfer_id: str


class ReleasePaymentResponse(CamelModel):
    success: bool = True
    released: list[ReleasedMilestoneResponse]


class RefundedPaymentResponse(CamelModel):
    payment_id: str
    amount: Amount
    refund_id: str


class RefundPaymentResponse(CamelModel):
    success: bool = True
    refunded: list[RefundedPaymentResponse]


class PaymentSummaryResponse(CamelModel):
    """One payment row as shown in the order's payment status."""

    id: str
    order_ids: list[str]
    amount: Amount
    commission: Amount
    status: str
    transaction_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_payment(cls, payment: Payment) -> PaymentSummaryResponse:
        return cls(
            id=str(payment.id),
            order_ids=payment.order_ids,
            amount=payment.amount,
            commission=payment.commission,
            status=payment.status,
            transaction_id=payment.payment_gateway_ref,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class PaymentProgressResponse(CamelModel):
    paid_percentage: float
    released_percentage: float
    remaining_percentage: float


class PaymentStatusResponse(CamelModel):
    """Escrow summary of an order."""

    order_id: str
    order_status: str
    agreed_price: Amount
    currency: str
    escrow_funded: bool
    milestones: list[Milestone] | None
    payments: list[PaymentSummaryResponse]
    progress: PaymentProgressResponse


class WebhookAckResponse(CamelModel):
    """Acknowledgement returned to the gateway."""

    success: bool = True
    event: str
    handled: bool
