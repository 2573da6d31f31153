"""Escrow payment REST API routes.

Routes:
    POST /api/payments/initiate   - Collect milestone 1 (computes the plan)
    POST /api/payments/milestone  - Collect milestone 2
    POST /api/payments/release    - Release paid milestones to the provider
    POST /api/payments/refund     - Refund a cancelled or disputed order
    GET  /api/payments/status     - Escrow summary of an order

The caller identity comes from the X-User-ID header; the service checks it
against the order before touching the gateway. Release is also screened by
the release rule here, which turns away orders with nothing paid to release.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import (
    get_current_user_id,
    get_db_session,
    get_payment_gateway,
    get_public_base_url,
    get_redis_client,
)
from marketplace_escrow.domain import rules
from marketplace_escrow.domain.exceptions import DuplicateOperationError
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.infrastructure.database.repositories import OrderRepository
from marketplace_escrow.infrastructure.redis_client import (
    claim_idempotency_key,
    release_idempotency_key,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.payments import (
    EscrowPaymentResponse,
    InitiatePaymentBody,
    PaymentProgressResponse,
    PaymentStatusResponse,
    PaymentSummaryResponse,
    RefundedPaymentResponse,
    RefundPaymentBody,
    RefundPaymentResponse,
    ReleasedMilestoneResponse,
    ReleasePaymentBody,
    ReleasePaymentResponse,
)
from marketplace_escrow.services.escrow_service import EscrowService, PaymentInitiation

router = APIRouter(prefix="/api/payments", tags=["Payments"])
logger = get_logger(__name__)


def _return_url(base_url: str, order_id: uuid.UUID) -> str:
    return f"{base_url}/orders/{order_id}/payment"


def _callback_url(base_url: str, gateway: PaymentGateway) -> str:
    return f"{base_url}/api/webhooks/{gateway.name}"


def _initiation_response(result: PaymentInitiation) -> EscrowPaymentResponse:
    return EscrowPaymentResponse(
        payment_url=result.payment_url,
        transaction_id=result.transaction_id,
        payment_id=result.payment_id,
        milestones=result.milestones,
        requires_second_payment=result.requires_second_payment,
    )


async def _claim(
    redis: aioredis.Redis | None, scope: str, key: str | None
) -> bool:
    """Claim an Idempotency-Key if one was sent and Redis is up."""
    if not key or redis is None:
        return False
    if not await claim_idempotency_key(redis, scope, key):
        raise DuplicateOperationError(key)
    return True


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


@router.post(
    "/initiate",
    response_model=EscrowPaymentResponse,
    summary="Initiate escrow payment for an order",
)
async def initiate_payment(
    body: InitiatePaymentBody,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    redis: aioredis.Redis | None = Depends(get_redis_client),
    base_url: str = Depends(get_public_base_url),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> EscrowPaymentResponse:
    """Collect the first milestone; the response carries the checkout URL."""
    claimed = await _claim(redis, "payments.initiate", idempotency_key)
    svc = EscrowService(session, gateway)
    try:
        result = await svc.initiate_escrow_payment(
            order_id=body.order_id,
            actor_id=user_id,
            return_url=_return_url(base_url, body.order_id),
            callback_url=_callback_url(base_url, gateway),
        )
    except Exception:
        if claimed:
            await release_idempotency_key(redis, "payments.initiate", idempotency_key)
        raise
    return _initiation_response(result)


@router.post(
    "/milestone",
    response_model=EscrowPaymentResponse,
    summary="Initiate the second milestone payment",
)
async def initiate_second_milestone(
    body: InitiatePaymentBody,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    redis: aioredis.Redis | None = Depends(get_redis_client),
    base_url: str = Depends(get_public_base_url),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> EscrowPaymentResponse:
    """Collect milestone 2 of a two-milestone order."""
    claimed = await _claim(redis, "payments.milestone", idempotency_key)
    svc = EscrowService(session, gateway)
    try:
        result = await svc.initiate_second_milestone(
            order_id=body.order_id,
            actor_id=user_id,
            return_url=_return_url(base_url, body.order_id),
            callback_url=_callback_url(base_url, gateway),
        )
    except Exception:
        if claimed:
            await release_idempotency_key(redis, "payments.milestone", idempotency_key)
        raise
    return _initiation_response(result)


# ---------------------------------------------------------------------------
# Release / Refund
# ---------------------------------------------------------------------------


@router.post(
    "/release",
    response_model=ReleasePaymentResponse,
    summary="Release escrowed funds to the provider",
)
async def release_payment(
    body: ReleasePaymentBody,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> ReleasePaymentResponse:
    order = await OrderRepository(session).get_or_raise(body.order_id)
    rules.ensure(rules.can_release_payment(order, user_id))

    svc = EscrowService(session, gateway)
    released = await svc.release_payment(
        order_id=body.order_id,
        milestone_number=body.milestone_number,
        actor_id=user_id,
    )
    return ReleasePaymentResponse(
        released=[
            ReleasedMilestoneResponse(
                milestone_number=r.milestone_number,
                amount=r.amount,
                commission=r.commission,
                transfer_id=r.transfer_id,
            )
            for r in released
        ]
    )


@router.post(
    "/refund",
    response_model=RefundPaymentResponse,
    summary="Refund a cancelled or disputed order",
)
async def refund_payment(
    body: RefundPaymentBody,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> RefundPaymentResponse:
    svc = EscrowService(session, gateway)
    refunded = await svc.refund_payment(
        order_id=body.order_id,
        reason=body.reason,
        actor_id=user_id,
    )
    return RefundPaymentResponse(
        refunded=[
            RefundedPaymentResponse(
                payment_id=r.payment_id, amount=r.amount, refund_id=r.refund_id
            )
            for r in refunded
        ]
    )


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@router.get(
    "/status",
    response_model=PaymentStatusResponse,
    summary="Get the escrow payment status of an order",
)
async def payment_status(
    order_id: uuid.UUID = Query(..., alias="orderId"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentStatusResponse:
    svc = EscrowService(session, gateway)
    summary = await svc.get_payment_status(order_id, user_id)
    return PaymentStatusResponse(
        order_id=summary.order_id,
        order_status=summary.order_status,
        agreed_price=summary.agreed_price,
        currency=summary.currency,
        escrow_funded=summary.escrow_funded,
        milestones=summary.milestones,
        payments=[PaymentSummaryResponse.from_payment(p) for p in summary.payments],
        progress=PaymentProgressResponse.model_validate(summary.progress),
    )
