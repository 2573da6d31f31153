"""Tests for the escrow validation rules.

The rules only read attributes, so a plain dataclass stands in for the ORM
Order here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import pytest

from marketplace_escrow.domain import rules
from marketplace_escrow.domain.enums import MilestoneStatus
from marketplace_escrow.domain.exceptions import NotAuthorizedError, PreconditionError
from marketplace_escrow.domain.milestones import commission_for, compute_milestones


@dataclass
class StubOrder:
    buyer_id: str = "buyer_1"
    provider_ids: list[str] = field(default_factory=lambda: ["provider_1"])
    status: str = "active"
    escrow_funded: bool = False
    agreed_price: Decimal = Decimal("500000")
    metadata_json: dict[str, Any] | None = None


def _plan(total: str, *statuses: str) -> dict[str, Any]:
    plan = compute_milestones(Decimal(total))
    for milestone, status in zip(plan.milestones, statuses, strict=True):
        milestone.status = MilestoneStatus(status)
    return plan.to_metadata()


class TestEnsure:
    def test_ok_passes(self) -> None:
        rules.ensure(rules.OK)

    def test_unauthorized_raises_not_authorized(self) -> None:
        with pytest.raises(NotAuthorizedError):
            rules.ensure(rules.can_view_order(StubOrder(), "stranger"))

    def test_invalid_raises_precondition(self) -> None:
        with pytest.raises(PreconditionError) as exc_info:
            rules.ensure(rules.can_release_funds(StubOrder()))
        assert not isinstance(exc_info.value, NotAuthorizedError)


class TestActors:
    def test_participants(self) -> None:
        order = StubOrder()
        assert rules.is_buyer(order, "buyer_1")
        assert rules.is_participant(order, "provider_1")
        assert not rules.is_participant(order, "stranger")
        assert not rules.is_participant(order, None)
        assert not rules.is_buyer(order, "")


class TestCanInitiatePayment:
    def test_buyer_on_active_order(self) -> None:
        assert rules.can_initiate_payment(StubOrder(), "buyer_1").valid

    def test_provider_cannot_initiate(self) -> None:
        result = rules.can_initiate_payment(StubOrder(), "provider_1")
        assert not result.valid
        assert result.unauthorized
        assert result.error == "Only the buyer can initiate payment"

    def test_already_funded(self) -> None:
        result = rules.can_initiate_payment(StubOrder(escrow_funded=True), "buyer_1")
        assert result.error == "Order already funded"

    def test_not_active(self) -> None:
        result = rules.can_initiate_payment(StubOrder(status="delivered"), "buyer_1")
        assert result.error == "Order must be active to accept payment"

    def test_first_milestone_paid(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "paid", "pending"))
        result = rules.can_initiate_payment(order, "buyer_1")
        assert result.error == "First milestone already paid"

    def test_pending_plan_may_be_retried(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "pending", "pending"))
        assert rules.can_initiate_payment(order, "buyer_1").valid


class TestCanInitiateSecondMilestone:
    def test_after_first_paid(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "paid", "pending"))
        assert rules.can_initiate_second_milestone(order, "buyer_1").valid

    def test_without_plan(self) -> None:
        result = rules.can_initiate_second_milestone(StubOrder(), "buyer_1")
        assert result.error == "Order does not have milestone payments"

    def test_single_payment_plan(self) -> None:
        order = StubOrder(agreed_price=Decimal("50000"), metadata_json=_plan("50000", "paid"))
        result = rules.can_initiate_second_milestone(order, "buyer_1")
        assert result.error == "Order does not have milestone payments"

    def test_first_not_paid(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "pending", "pending"))
        result = rules.can_initiate_second_milestone(order, "buyer_1")
        assert result.error == "First milestone must be paid first"

    def test_second_already_processed(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "paid", "paid"))
        result = rules.can_initiate_second_milestone(order, "buyer_1")
        assert result.error == "Second milestone already processed"


class TestCanReleasePayment:
    def test_delivered_and_funded(self) -> None:
        order = StubOrder(
            status="delivered",
            escrow_funded=True,
            metadata_json=_plan("500000", "paid", "paid"),
        )
        assert rules.can_release_payment(order, "buyer_1").valid

    def test_provider_cannot_release(self) -> None:
        order = StubOrder(status="delivered", escrow_funded=True)
        result = rules.can_release_payment(order, "provider_1")
        assert result.unauthorized

    def test_not_delivered(self) -> None:
        order = StubOrder(status="active", escrow_funded=True)
        result = rules.can_release_payment(order, "buyer_1")
        assert result.error == "Order must be delivered before releasing payment"

    def test_not_funded(self) -> None:
        order = StubOrder(status="delivered", escrow_funded=False)
        result = rules.can_release_payment(order, "buyer_1")
        assert result.error == "Order escrow not fully funded"

    def test_nothing_paid_left(self) -> None:
        order = StubOrder(
            status="delivered",
            escrow_funded=True,
            metadata_json=_plan("500000", "released", "released"),
        )
        result = rules.can_release_payment(order, "buyer_1")
        assert result.error == "No paid milestones to release"

    def test_funds_gate_ignores_actor(self) -> None:
        order = StubOrder(status="delivered", escrow_funded=True)
        assert rules.can_release_funds(order).valid


class TestIsSettling:
    def test_claim_in_metadata(self) -> None:
        metadata = {
            **_plan("500000", "paid", "paid"),
            "settlingSince": "2026-01-01T00:00:00+00:00",
        }
        assert rules.is_settling(StubOrder(metadata_json=metadata))

    def test_no_claim(self) -> None:
        assert not rules.is_settling(StubOrder(metadata_json=_plan("500000", "paid", "paid")))
        assert not rules.is_settling(StubOrder())


class TestCanRefund:
    @pytest.mark.parametrize("status", ["cancelled", "disputed"])
    def test_refundable(self, status: str) -> None:
        assert rules.can_refund(StubOrder(status=status), "provider_1").valid

    @pytest.mark.parametrize("status", ["active", "delivered", "completed"])
    def test_not_refundable(self, status: str) -> None:
        result = rules.can_refund(StubOrder(status=status), "buyer_1")
        assert result.error == "Order must be cancelled or disputed for refund"

    def test_stranger(self) -> None:
        result = rules.can_refund(StubOrder(status="cancelled"), "stranger")
        assert result.unauthorized


class TestValueRules:
    def test_currencies(self) -> None:
        assert rules.is_supported_currency("usd")
        assert rules.is_supported_currency("NGN")
        assert not rules.is_supported_currency("XYZ")
        assert rules.is_supported_currency("XYZ", ["XYZ"])

    @pytest.mark.parametrize(
        ("amount", "error"),
        [
            (Decimal("0"), "Amount must be positive"),
            (Decimal("-5"), "Amount must be positive"),
            (Decimal("10000000.01"), "Amount exceeds maximum limit"),
            (Decimal("NaN"), "Invalid amount format"),
            (Decimal("Infinity"), "Invalid amount format"),
        ],
    )
    def test_invalid_amounts(self, amount: Decimal, error: str) -> None:
        assert rules.validate_amount(amount).error == error

    def test_max_amount_inclusive(self) -> None:
        assert rules.validate_amount(Decimal("10000000")).valid

    def test_milestone_data(self) -> None:
        good = _plan("500000", "pending", "pending")["milestones"]
        assert rules.is_valid_milestone_data(good)
        assert not rules.is_valid_milestone_data([])
        assert not rules.is_valid_milestone_data("milestones")
        assert not rules.is_valid_milestone_data(good + good)
        assert not rules.is_valid_milestone_data([{**good[0], "status": "unknown"}])
        assert not rules.is_valid_milestone_data([{**good[0], "amount": "250000"}])


class TestDerivedFigures:
    def test_provider_payout(self) -> None:
        payout = rules.calculate_provider_payout(Decimal("250000"))
        assert payout.commission == Decimal("25000")
        assert payout.net_amount == Decimal("225000")

    def test_payout_commission_is_rounded_to_cents(self) -> None:
        payout = rules.calculate_provider_payout(Decimal("100000.05"))
        assert payout.commission == commission_for(Decimal("100000.05"))
        assert payout.commission == Decimal("10000.01")
        assert payout.net_amount == Decimal("90000.04")

    def test_plan_queries(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "released", "paid"))
        assert [m.milestone_number for m in rules.paid_milestones(order)] == [2]
        assert rules.next_pending_milestone(order) is None

    def test_next_pending(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "paid", "pending"))
        assert rules.next_pending_milestone(order).milestone_number == 2
        assert rules.paid_milestones(StubOrder()) == []

    def test_plan_totals(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "released", "paid"))
        assert rules.total_paid_amount(order) == Decimal("500000")
        assert rules.total_released_amount(order) == Decimal("250000")

    def test_progress(self) -> None:
        order = StubOrder(metadata_json=_plan("500000", "released", "paid"))
        assert rules.payment_progress(order) == {
            "paidPercentage": 100.0,
            "releasedPercentage": 50.0,
            "remainingPercentage": 0.0,
        }

    def test_progress_without_plan(self) -> None:
        order = StubOrder(agreed_price=Decimal("100"), escrow_funded=True)
        progress = rules.payment_progress(order)
        assert progress["paidPercentage"] == 100.0
        assert progress["releasedPercentage"] == 0.0
