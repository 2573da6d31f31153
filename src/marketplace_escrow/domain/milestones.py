"""Milestone plans embedded in Order.metadata.

The persisted layout is a plain JSON object:

    {"milestones": [...], "currentMilestone": 1, "refundReason": ..., "refundedAt": ...,
     "settlingSince": ...}

``settlingSince`` is the claim a release or refund holds while it moves money.

On read it is parsed into one of three variants so that shape rules live in
the types instead of ad hoc checks:

    NoPlan             - no milestones yet (or a legacy single-payment order)
    SinglePaymentPlan  - exactly one milestone at 100%
    TwoMilestonePlan   - exactly two milestones at 50% each

Unknown keys (e.g. disputeReason) are carried through untouched.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    model_validator,
)

from marketplace_escrow.domain.enums import MilestoneStatus
from marketplace_escrow.domain.exceptions import StoreError
from marketplace_escrow.domain.state_machine import next_milestone_status

MILESTONE_THRESHOLD = Decimal("200000")
PLATFORM_COMMISSION_RATE = Decimal("0.10")

CENT = Decimal("0.01")

# Decimal in Python, plain JSON number on the wire and in the store.
Amount = Annotated[
    Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")
]


def quantize(value: Decimal) -> Decimal:
    """Round a money amount to two decimal places."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class Milestone(BaseModel):
    """One partial payment within a plan."""

    model_config = ConfigDict(populate_by_name=True)

    milestone_number: int = Field(alias="milestoneNumber", ge=1, le=2)
    amount: Amount = Field(gt=0)
    percentage: int = Field(gt=0, le=100)
    status: MilestoneStatus = MilestoneStatus.PENDING
    payment_id: str | None = Field(default=None, alias="paymentId")
    transaction_id: str | None = Field(default=None, alias="transactionId")
    transfer_id: str | None = Field(default=None, alias="transferId")

    def advance(self, event_name: str) -> None:
        """Move the milestone forward through MilestoneStateMachine.

        Raises InvalidStateTransitionError for anything but
        pending -> paid -> released.
        """
        self.status = MilestoneStatus(next_milestone_status(self.status.value, event_name))


class _MetadataBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    refund_reason: str | None = Field(default=None, alias="refundReason")
    refunded_at: str | None = Field(default=None, alias="refundedAt")
    settling_since: str | None = Field(default=None, alias="settlingSince")

    @property
    def is_settling(self) -> bool:
        return self.settling_since is not None

    def to_metadata(self) -> dict[str, Any]:
        """Serialize back to the persisted JSON layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class NoPlan(_MetadataBase):
    """Order metadata without a milestone plan."""

    released_payment_ids: list[str] | None = Field(default=None, alias="releasedPaymentIds")


class _MilestonePlan(_MetadataBase):
    milestones: list[Milestone]
    current_milestone: int = Field(default=1, alias="currentMilestone", ge=1, le=2)

    @property
    def total(self) -> Decimal:
        return sum((m.amount for m in self.milestones), Decimal("0"))

    @property
    def requires_second_payment(self) -> bool:
        return len(self.milestones) > 1

    @property
    def all_funded(self) -> bool:
        """True when every milestone is paid or released."""
        return all(
            m.status in (MilestoneStatus.PAID, MilestoneStatus.RELEASED)
            for m in self.milestones
        )

    @property
    def all_released(self) -> bool:
        return all(m.status == MilestoneStatus.RELEASED for m in self.milestones)

    def milestone(self, number: int) -> Milestone | None:
        return next((m for m in self.milestones if m.milestone_number == number), None)

    def find_by_transaction(self, transaction_id: str) -> Milestone | None:
        return next(
            (m for m in self.milestones if m.transaction_id == transaction_id), None
        )

    def with_status(self, status: MilestoneStatus) -> list[Milestone]:
        return [m for m in self.milestones if m.status == status]


class SinglePaymentPlan(_MilestonePlan):
    """Exactly one milestone covering the whole price."""

    @model_validator(mode="after")
    def _check_shape(self) -> SinglePaymentPlan:
        if len(self.milestones) != 1:
            raise ValueError("single payment plan needs exactly one milestone")
        only = self.milestones[0]
        if only.milestone_number != 1 or only.percentage != 100:
            raise ValueError("single payment plan must be milestone 1 at 100%")
        return self


class TwoMilestonePlan(_MilestonePlan):
    """Two milestones of 50% each, paid in order."""

    @model_validator(mode="after")
    def _check_shape(self) -> TwoMilestonePlan:
        if len(self.milestones) != 2:
            raise ValueError("two milestone plan needs exactly two milestones")
        if [m.milestone_number for m in self.milestones] != [1, 2]:
            raise ValueError("milestones must be numbered 1 and 2 in order")
        if any(m.percentage != 50 for m in self.milestones):
            raise ValueError("each milestone must be 50%")
        return self


MilestonePlan = SinglePaymentPlan | TwoMilestonePlan
OrderMetadata = NoPlan | SinglePaymentPlan | TwoMilestonePlan


def parse_order_metadata(raw: dict[str, Any] | None) -> OrderMetadata:
    """Parse stored Order.metadata into its variant.

    Raises:
        StoreError: If the stored plan does not have a valid shape.
    """
    data = dict(raw or {})
    milestones = data.get("milestones") or []
    try:
        if not milestones:
            data.pop("milestones", None)
            data.pop("currentMilestone", None)
            return NoPlan.model_validate(data)
        if len(milestones) == 1:
            return SinglePaymentPlan.model_validate(data)
        return TwoMilestonePlan.model_validate(data)
    except ValidationError as err:
        raise StoreError(
            f"Order metadata holds an invalid milestone plan: {err.error_count()} error(s)",
            code="INVALID_MILESTONE_PLAN",
        ) from err


def requires_milestones(total: Decimal, threshold: Decimal = MILESTONE_THRESHOLD) -> bool:
    return total > threshold


def compute_milestones(
    total: Decimal, threshold: Decimal = MILESTONE_THRESHOLD
) -> MilestonePlan:
    """Split an order price into its milestone plan.

    Above the threshold the price is split 50/50; the second half takes any
    rounding remainder so the amounts always sum to ``total``.
    """
    if not requires_milestones(total, threshold):
        return SinglePaymentPlan(
            milestones=[Milestone(milestone_number=1, amount=total, percentage=100)],
            current_milestone=1,
        )

    first = quantize(total * Decimal("0.5"))
    return TwoMilestonePlan(
        milestones=[
            Milestone(milestone_number=1, amount=first, percentage=50),
            Milestone(milestone_number=2, amount=total - first, percentage=50),
        ],
        current_milestone=1,
    )


def attach_plan(metadata: OrderMetadata, plan: MilestonePlan) -> MilestonePlan:
    """Return ``plan`` carrying over any other keys already in ``metadata``."""
    merged = {**metadata.to_metadata(), **plan.to_metadata()}
    return type(plan).model_validate(merged)


def commission_for(amount: Decimal, rate: Decimal = PLATFORM_COMMISSION_RATE) -> Decimal:
    return quantize(amount * rate)
