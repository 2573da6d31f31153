"""Order REST API routes.

Routes:
    POST /api/orders                - Create an order (caller is the buyer)
    GET  /api/orders/{id}           - Get order details (participants only)
    POST /api/orders/{id}/deliver   - Provider marks the work delivered
    POST /api/orders/{id}/cancel    - Cancel an active or delivered order
    POST /api/orders/{id}/dispute   - Raise a dispute
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import get_current_user_id, get_db_session
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.orders import (
    CreateOrderRequest,
    DisputeOrderRequest,
    OrderResponse,
)
from marketplace_escrow.services.order_service import OrderService

router = APIRouter(prefix="/api/orders", tags=["Orders"])
logger = get_logger(__name__)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Create a new order",
)
async def create_order(
    request: CreateOrderRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> OrderResponse:
    svc = OrderService(session)
    order = await svc.create_order(
        buyer_id=user_id,
        provider_ids=request.provider_ids,
        agreed_price=request.agreed_price,
        currency=request.currency,
        job_ids=request.job_ids,
    )
    return OrderResponse.from_order(order)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order details",
)
async def get_order(
    order_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> OrderResponse:
    svc = OrderService(session)
    return OrderResponse.from_order(await svc.get_order(order_id, user_id))


@router.post(
    "/{order_id}/deliver",
    response_model=OrderResponse,
    summary="Mark the order delivered",
)
async def deliver_order(
    order_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> OrderResponse:
    svc = OrderService(session)
    return OrderResponse.from_order(await svc.mark_delivered(order_id, user_id))


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel the order",
)
async def cancel_order(
    order_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> OrderResponse:
    svc = OrderService(session)
    return OrderResponse.from_order(await svc.cancel_order(order_id, user_id))


@router.post(
    "/{order_id}/dispute",
    response_model=OrderResponse,
    summary="Raise a dispute on the order",
)
async def dispute_order(
    order_id: uuid.UUID,
    request: DisputeOrderRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> OrderResponse:
    svc = OrderService(session)
    order = await svc.dispute_order(order_id, user_id, request.reason)
    return OrderResponse.from_order(order)
