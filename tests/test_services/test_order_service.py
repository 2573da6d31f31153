"""Tests for OrderService (creation and the non-payment lifecycle edges)."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    NotAuthorizedError,
    OrderNotFoundError,
    PreconditionError,
    SettlementInProgressError,
)
from marketplace_escrow.domain.milestones import compute_milestones
from marketplace_escrow.services.order_service import OrderService

from conftest import BUYER, PROVIDER, STRANGER


@pytest.fixture
def orders(db_session, settings) -> OrderService:
    return OrderService(db_session, settings)


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_active_order_without_plan(self, orders) -> None:
        order = await orders.create_order(
            buyer_id=BUYER,
            provider_ids=[PROVIDER],
            agreed_price=Decimal("1234.567"),
            currency="usd",
            job_ids=["job_9"],
        )

        assert order.status == "active"
        assert order.escrow_funded is False
        assert order.metadata_json is None
        assert order.currency == "USD"
        assert order.agreed_price == Decimal("1234.57")
        assert order.job_ids == ["job_9"]
        assert order.version == 1

    @pytest.mark.asyncio
    async def test_requires_provider(self, orders) -> None:
        with pytest.raises(PreconditionError, match="at least one provider"):
            await orders.create_order(BUYER, [], Decimal("10"), "USD")

    @pytest.mark.asyncio
    async def test_buyer_cannot_be_provider(self, orders) -> None:
        with pytest.raises(PreconditionError, match="cannot be a provider"):
            await orders.create_order(BUYER, [BUYER], Decimal("10"), "USD")

    @pytest.mark.asyncio
    async def test_unsupported_currency(self, orders) -> None:
        with pytest.raises(PreconditionError, match="Unsupported currency"):
            await orders.create_order(BUYER, [PROVIDER], Decimal("10"), "XYZ")

    @pytest.mark.asyncio
    async def test_amount_over_limit(self, orders) -> None:
        with pytest.raises(PreconditionError, match="exceeds maximum"):
            await orders.create_order(BUYER, [PROVIDER], Decimal("10000000.01"), "USD")


class TestGetOrder:
    @pytest.mark.asyncio
    async def test_participants_only(self, orders, make_order) -> None:
        order = await make_order()
        assert (await orders.get_order(order.id, PROVIDER)).id == order.id
        with pytest.raises(NotAuthorizedError):
            await orders.get_order(order.id, STRANGER)

    @pytest.mark.asyncio
    async def test_missing(self, orders) -> None:
        with pytest.raises(OrderNotFoundError):
            await orders.get_order(uuid.uuid4(), BUYER)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_provider_delivers(self, orders, make_order) -> None:
        order = await make_order()
        delivered = await orders.mark_delivered(order.id, PROVIDER)
        assert delivered.status == "delivered"
        assert delivered.version == 2

    @pytest.mark.asyncio
    async def test_buyer_cannot_deliver(self, orders, make_order) -> None:
        order = await make_order()
        with pytest.raises(NotAuthorizedError):
            await orders.mark_delivered(order.id, BUYER)

    @pytest.mark.asyncio
    async def test_cancel(self, orders, make_order) -> None:
        order = await make_order(status="delivered")
        cancelled = await orders.cancel_order(order.id, BUYER)
        assert cancelled.status == "cancelled"

    @pytest.mark.asyncio
    async def test_completed_cannot_be_cancelled(self, orders, make_order) -> None:
        order = await make_order(status="completed")
        with pytest.raises(InvalidStateTransitionError):
            await orders.cancel_order(order.id, BUYER)

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, orders, make_order) -> None:
        order = await make_order()
        with pytest.raises(NotAuthorizedError):
            await orders.cancel_order(order.id, STRANGER)

    @pytest.mark.asyncio
    async def test_dispute_keeps_plan(self, orders, make_order) -> None:
        plan = compute_milestones(Decimal("500000")).to_metadata()
        order = await make_order(agreed_price="500000.00", metadata=plan)

        disputed = await orders.dispute_order(order.id, PROVIDER, "scope creep")

        assert disputed.status == "disputed"
        assert disputed.metadata_json["disputeReason"] == "scope creep"
        assert len(disputed.metadata_json["milestones"]) == 2

    @pytest.mark.asyncio
    async def test_settling_order_is_frozen(self, orders, make_order) -> None:
        order = await make_order(
            status="delivered",
            escrow_funded=True,
            metadata={"settlingSince": "2026-01-01T00:00:00+00:00"},
        )

        with pytest.raises(SettlementInProgressError):
            await orders.cancel_order(order.id, BUYER)
        with pytest.raises(SettlementInProgressError):
            await orders.dispute_order(order.id, PROVIDER, "late")
