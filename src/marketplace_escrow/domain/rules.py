"""Validation rules for escrow payment operations.

Stateless checks consulted by the HTTP handlers before calling the
orchestrator, and re-checked by the orchestrator itself. Each ``can_*`` rule
returns a RuleResult; ``ensure`` turns a failed result into the matching
domain exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from marketplace_escrow.domain.enums import MilestoneStatus, OrderStatus
from marketplace_escrow.domain.exceptions import NotAuthorizedError, PreconditionError
from marketplace_escrow.domain.milestones import (
    PLATFORM_COMMISSION_RATE,
    Milestone,
    NoPlan,
    TwoMilestonePlan,
    commission_for,
    parse_order_metadata,
)

DEFAULT_CURRENCIES = ("USD", "EUR", "GBP", "NGN", "GHS", "KES", "ZAR")
DEFAULT_MAX_AMOUNT = Decimal("10000000")

REFUNDABLE_STATUSES = (OrderStatus.CANCELLED, OrderStatus.DISPUTED)


class OrderLike(Protocol):
    """The order attributes the rules read (satisfied by the ORM model)."""

    buyer_id: str
    provider_ids: list[str]
    status: str
    escrow_funded: bool
    agreed_price: Decimal
    metadata_json: dict[str, Any] | None


@dataclass(frozen=True)
class RuleResult:
    """Outcome of a rule check.

    Attributes:
        valid: Whether the operation may proceed.
        error: Human-readable reason when it may not.
        unauthorized: True when the failure is about who is acting.
    """

    valid: bool
    error: str | None = None
    unauthorized: bool = False


OK = RuleResult(valid=True)


def _deny(error: str) -> RuleResult:
    return RuleResult(valid=False, error=error)


def _forbid(error: str) -> RuleResult:
    return RuleResult(valid=False, error=error, unauthorized=True)


def ensure(result: RuleResult) -> None:
    """Raise NotAuthorizedError / PreconditionError for a failed rule."""
    if result.valid:
        return
    message = result.error or "Operation not allowed"
    if result.unauthorized:
        raise NotAuthorizedError(message)
    raise PreconditionError(message)


# ---------------------------------------------------------------------------
# Actor rules
# ---------------------------------------------------------------------------


def is_buyer(order: OrderLike, user_id: str | None) -> bool:
    return bool(user_id) and order.buyer_id == user_id


def is_participant(order: OrderLike, user_id: str | None) -> bool:
    return is_buyer(order, user_id) or (bool(user_id) and user_id in order.provider_ids)


def can_view_order(order: OrderLike, user_id: str | None) -> RuleResult:
    if not is_participant(order, user_id):
        return _forbid("Not authorized to view this order")
    return OK


# ---------------------------------------------------------------------------
# Operation rules
# ---------------------------------------------------------------------------


def can_initiate_payment(order: OrderLike, user_id: str | None) -> RuleResult:
    if not is_buyer(order, user_id):
        return _forbid("Only the buyer can initiate payment")
    if order.escrow_funded:
        return _deny("Order already funded")
    if order.status != OrderStatus.ACTIVE:
        return _deny("Order must be active to accept payment")
    metadata = parse_order_metadata(order.metadata_json)
    if not isinstance(metadata, NoPlan):
        first = metadata.milestone(1)
        if first is not None and first.status != MilestoneStatus.PENDING:
            return _deny("First milestone already paid")
    return OK


def can_initiate_second_milestone(order: OrderLike, user_id: str | None) -> RuleResult:
    if not is_buyer(order, user_id):
        return _forbid("Only the buyer can initiate payment")
    metadata = parse_order_metadata(order.metadata_json)
    if not isinstance(metadata, TwoMilestonePlan):
        return _deny("Order does not have milestone payments")
    if metadata.milestones[0].status != MilestoneStatus.PAID:
        return _deny("First milestone must be paid first")
    if metadata.milestones[1].status != MilestoneStatus.PENDING:
        return _deny("Second milestone already processed")
    return OK


def can_release_payment(order: OrderLike, user_id: str | None) -> RuleResult:
    if not is_buyer(order, user_id):
        return _forbid("Only the buyer can release payment")
    result = can_release_funds(order)
    if not result.valid:
        return result
    metadata = parse_order_metadata(order.metadata_json)
    if not isinstance(metadata, NoPlan) and not metadata.with_status(MilestoneStatus.PAID):
        return _deny("No paid milestones to release")
    return OK


def is_settling(order: OrderLike) -> bool:
    """True while a release or refund holds the order's settlement claim."""
    return parse_order_metadata(order.metadata_json).is_settling


def can_release_funds(order: OrderLike) -> RuleResult:
    """Status gate for release, independent of who is acting."""
    if order.status != OrderStatus.DELIVERED:
        return _deny("Order must be delivered before releasing payment")
    if not order.escrow_funded:
        return _deny("Order escrow not fully funded")
    return OK


def can_refund(order: OrderLike, user_id: str | None) -> RuleResult:
    if not is_participant(order, user_id):
        return _forbid("Only buyer or provider can request refund")
    return can_refund_funds(order)


def can_refund_funds(order: OrderLike) -> RuleResult:
    """Status gate for refund, independent of who is acting."""
    if order.status not in REFUNDABLE_STATUSES:
        return _deny("Order must be cancelled or disputed for refund")
    return OK


# ---------------------------------------------------------------------------
# Value rules
# ---------------------------------------------------------------------------


def is_supported_currency(currency: str, supported: tuple[str, ...] | list[str] = DEFAULT_CURRENCIES) -> bool:
    return currency.upper() in {c.upper() for c in supported}


def validate_amount(amount: Decimal, maximum: Decimal = DEFAULT_MAX_AMOUNT) -> RuleResult:
    if not amount.is_finite():
        return _deny("Invalid amount format")
    if amount <= 0:
        return _deny("Amount must be positive")
    if amount > maximum:
        return _deny("Amount exceeds maximum limit")
    return OK


def is_valid_milestone_data(milestones: Any) -> bool:
    """Check a raw milestone array before it is written."""
    if not isinstance(milestones, list) or not 1 <= len(milestones) <= 2:
        return False
    statuses = {s.value for s in MilestoneStatus}
    for m in milestones:
        if not isinstance(m, dict):
            return False
        if not isinstance(m.get("milestoneNumber"), int):
            return False
        if not isinstance(m.get("amount"), (int, float)) or isinstance(m.get("amount"), bool):
            return False
        if not isinstance(m.get("percentage"), (int, float)):
            return False
        if m.get("status") not in statuses:
            return False
    return True


# ---------------------------------------------------------------------------
# Derived figures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Payout:
    gross_amount: Decimal
    commission: Decimal
    net_amount: Decimal


def calculate_provider_payout(
    amount: Decimal, commission_rate: Decimal = PLATFORM_COMMISSION_RATE
) -> Payout:
    """Split a collected amount into the platform commission and the provider's share."""
    commission = commission_for(amount, commission_rate)
    return Payout(gross_amount=amount, commission=commission, net_amount=amount - commission)


def paid_milestones(order: OrderLike) -> list[Milestone]:
    metadata = parse_order_metadata(order.metadata_json)
    if isinstance(metadata, NoPlan):
        return []
    return metadata.with_status(MilestoneStatus.PAID)


def next_pending_milestone(order: OrderLike) -> Milestone | None:
    metadata = parse_order_metadata(order.metadata_json)
    if isinstance(metadata, NoPlan):
        return None
    pending = metadata.with_status(MilestoneStatus.PENDING)
    return pending[0] if pending else None


def total_paid_amount(order: OrderLike) -> Decimal:
    metadata = parse_order_metadata(order.metadata_json)
    if isinstance(metadata, NoPlan):
        return order.agreed_price if order.escrow_funded else Decimal("0")
    return sum(
        (
            m.amount
            for m in metadata.milestones
            if m.status in (MilestoneStatus.PAID, MilestoneStatus.RELEASED)
        ),
        Decimal("0"),
    )


def total_released_amount(order: OrderLike) -> Decimal:
    metadata = parse_order_metadata(order.metadata_json)
    if isinstance(metadata, NoPlan):
        return order.agreed_price if order.status == OrderStatus.COMPLETED else Decimal("0")
    return sum(
        (m.amount for m in metadata.with_status(MilestoneStatus.RELEASED)),
        Decimal("0"),
    )


def payment_progress(order: OrderLike) -> dict[str, float]:
    """Percentages of the agreed price that are paid, released and outstanding."""
    total = order.agreed_price
    if total <= 0:
        return {"paidPercentage": 0.0, "releasedPercentage": 0.0, "remainingPercentage": 0.0}
    paid = total_paid_amount(order)
    released = total_released_amount(order)
    return {
        "paidPercentage": float(paid / total * 100),
        "releasedPercentage": float(released / total * 100),
        "remainingPercentage": float((total - paid) / total * 100),
    }
