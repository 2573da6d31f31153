"""Escrow Service - milestone payment orchestration.

This is the application layer that coordinates between:
    - Validation rules and the order / milestone state machines
    - Repositories (orders, payments)
    - The payment gateway client

Operations:
    initiate_escrow_payment   -> collect milestone 1 (computing the plan once)
    initiate_second_milestone -> collect milestone 2 of a two-milestone plan
    handle_payment_completed  -> webhook confirmation, idempotent per payment
    release_payment           -> pay collected milestones out to the provider
    refund_payment            -> return completed payments to the buyer
    get_payment_status        -> participant-facing summary

Order rows are only written through OrderRepository.apply, so each order
change below is a pure function of a freshly read Order. Gateway calls happen
outside those functions and are never repeated by the write retry.

Release and refund move money in several gateway calls. Before the first one
they claim the order (``settlingSince`` in its metadata) with a versioned
write, and each call that succeeds is committed on its own, so a failure part
way through leaves a record of every transfer or refund that went out.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain import rules
from marketplace_escrow.domain.enums import MilestoneStatus, OrderStatus, PaymentStatus
from marketplace_escrow.domain.exceptions import (
    GatewayError,
    MarketplaceError,
    NotAuthorizedError,
    PaymentNotFoundError,
    PreconditionError,
    SettlementInProgressError,
    StoreError,
)
from marketplace_escrow.domain.gateway_protocol import (
    InitiatePaymentRequest,
    ReleaseRequest,
)
from marketplace_escrow.domain.milestones import (
    Milestone,
    MilestonePlan,
    NoPlan,
    TwoMilestonePlan,
    attach_plan,
    compute_milestones,
    parse_order_metadata,
)
from marketplace_escrow.domain.state_machine import next_order_status
from marketplace_escrow.infrastructure.database.orm_models import Order, Payment
from marketplace_escrow.infrastructure.database.repositories import (
    OrderChange,
    OrderMutation,
    OrderRepository,
    PaymentRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.gateway_protocol import PaymentGateway

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentInitiation:
    payment_url: str
    transaction_id: str
    payment_id: str
    milestones: list[Milestone]
    requires_second_payment: bool


@dataclass(frozen=True)
class PaymentCompletion:
    already_processed: bool = False
    milestone_completed: int | None = None
    all_milestones_paid: bool | None = None


@dataclass(frozen=True)
class ReleasedMilestone:
    milestone_number: int
    amount: Decimal
    commission: Decimal
    transfer_id: str


@dataclass(frozen=True)
class RefundedPayment:
    payment_id: str
    amount: Decimal
    refund_id: str


@dataclass(frozen=True)
class PaymentStatusSummary:
    order_id: str
    order_status: str
    agreed_price: Decimal
    currency: str
    escrow_funded: bool
    milestones: list[Milestone] | None
    payments: list[Payment]
    progress: dict[str, float] = field(default_factory=dict)


class EscrowService:
    """Orchestrates collection, confirmation, release and refund of escrow."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._orders = OrderRepository(session)
        self._payments = PaymentRepository(session)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_escrow_payment(
        self,
        order_id: uuid.UUID,
        actor_id: str,
        return_url: str,
        callback_url: str,
    ) -> PaymentInitiation:
        """Start collecting milestone 1, computing the plan if the order has none."""
        order = await self._orders.get_or_raise(order_id, fresh=True)
        rules.ensure(rules.can_initiate_payment(order, actor_id))

        plan = self._plan_for(order)
        first = plan.milestones[0]
        payment, payment_url = await self._collect(
            order, plan, first, return_url, callback_url
        )

        def attach_first(current: Order) -> OrderChange:
            rules.ensure(rules.can_initiate_payment(current, actor_id))
            fresh_plan = self._plan_for(current)
            milestone = fresh_plan.milestone(1)
            milestone.payment_id = str(payment.id)
            milestone.transaction_id = payment.payment_gateway_ref
            fresh_plan.current_milestone = 1
            return OrderChange(
                status=OrderStatus.ACTIVE.value,
                metadata=fresh_plan.to_metadata(),
                outcome={"plan": fresh_plan},
            )

        change = await self._write_after_gateway(order_id, attach_first, payment)
        stored: MilestonePlan = change.outcome["plan"]

        logger.info(
            "escrow.payment_initiated",
            order_id=str(order_id),
            payment_id=str(payment.id),
            transaction_id=payment.payment_gateway_ref,
            milestone=1,
            total_milestones=len(stored.milestones),
        )
        return PaymentInitiation(
            payment_url=payment_url,
            transaction_id=payment.payment_gateway_ref,
            payment_id=str(payment.id),
            milestones=stored.milestones,
            requires_second_payment=stored.requires_second_payment,
        )

    async def initiate_second_milestone(
        self,
        order_id: uuid.UUID,
        actor_id: str,
        return_url: str,
        callback_url: str,
    ) -> PaymentInitiation:
        """Start collecting milestone 2 once milestone 1 is paid."""
        order = await self._orders.get_or_raise(order_id, fresh=True)
        rules.ensure(rules.can_initiate_second_milestone(order, actor_id))

        plan = parse_order_metadata(order.metadata_json)
        second = rules.next_pending_milestone(order)
        payment, payment_url = await self._collect(
            order, plan, second, return_url, callback_url
        )

        def attach_second(current: Order) -> OrderChange:
            rules.ensure(rules.can_initiate_second_milestone(current, actor_id))
            fresh_plan = parse_order_metadata(current.metadata_json)
            milestone = fresh_plan.milestone(2)
            milestone.payment_id = str(payment.id)
            milestone.transaction_id = payment.payment_gateway_ref
            fresh_plan.current_milestone = 2
            return OrderChange(
                metadata=fresh_plan.to_metadata(), outcome={"plan": fresh_plan}
            )

        change = await self._write_after_gateway(order_id, attach_second, payment)
        stored: TwoMilestonePlan = change.outcome["plan"]

        logger.info(
            "escrow.payment_initiated",
            order_id=str(order_id),
            payment_id=str(payment.id),
            transaction_id=payment.payment_gateway_ref,
            milestone=2,
            total_milestones=2,
        )
        return PaymentInitiation(
            payment_url=payment_url,
            transaction_id=payment.payment_gateway_ref,
            payment_id=str(payment.id),
            milestones=stored.milestones,
            requires_second_payment=False,
        )

    # ------------------------------------------------------------------
    # Confirmation (verified webhook path only)
    # ------------------------------------------------------------------

    async def handle_payment_completed(self, transaction_id: str) -> PaymentCompletion:
        """Record a gateway confirmation; a repeat delivery changes nothing."""
        payment = await self._payments.get_by_gateway_ref(transaction_id)
        if payment is None:
            raise PaymentNotFoundError(transaction_id)

        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            logger.info(
                "escrow.payment_already_processed",
                transaction_id=transaction_id,
                status=payment.status,
            )
            return PaymentCompletion(already_processed=True)

        await self._payments.update_status(payment, PaymentStatus.COMPLETED)

        def mark_paid(current: Order) -> OrderChange | None:
            metadata = parse_order_metadata(current.metadata_json)
            if isinstance(metadata, NoPlan):
                if current.escrow_funded:
                    return None
                return OrderChange(escrow_funded=True, outcome={"all_paid": True})

            milestone = metadata.find_by_transaction(transaction_id)
            if milestone is None:
                return None
            if milestone.status == MilestoneStatus.PENDING:
                milestone.advance("confirm_payment")
            funded = metadata.all_funded
            return OrderChange(
                escrow_funded=funded,
                metadata=metadata.to_metadata(),
                outcome={"milestone": milestone.milestone_number, "all_paid": funded},
            )

        _, change = await self._orders.apply(payment.order_id, mark_paid)

        if change.is_empty:
            logger.info(
                "escrow.payment_completed_unmatched",
                transaction_id=transaction_id,
                order_id=str(payment.order_id),
            )
        else:
            logger.info(
                "escrow.payment_completed",
                transaction_id=transaction_id,
                order_id=str(payment.order_id),
                milestone=change.outcome.get("milestone"),
                escrow_funded=change.outcome.get("all_paid"),
            )
        return PaymentCompletion(
            milestone_completed=change.outcome.get("milestone"),
            all_milestones_paid=change.outcome.get("all_paid"),
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_payment(
        self,
        order_id: uuid.UUID,
        milestone_number: int | None = None,
        actor_id: str | None = None,
    ) -> list[ReleasedMilestone]:
        """Pay collected milestones out to the order's first provider.

        Only ``paid`` milestones move; ``pending`` and ``released`` ones are
        skipped without error so that a repeated call is harmless. Each
        milestone is marked ``released`` and committed as soon as its
        transfer is accepted.

        Raises:
            SettlementInProgressError: If a release or refund of the order
                is already under way.
        """
        order = await self._orders.get_or_raise(order_id, fresh=True)
        if actor_id is not None and not rules.is_buyer(order, actor_id):
            raise NotAuthorizedError("Only the buyer can release payment")
        rules.ensure(rules.can_release_funds(order))
        if not order.provider_ids:
            raise PreconditionError("Order has no provider to receive funds")

        metadata = parse_order_metadata(order.metadata_json)
        if isinstance(metadata, NoPlan):
            return await self._release_without_plan(order_id)
        if milestone_number is not None and metadata.milestone(milestone_number) is None:
            raise PreconditionError(f"Milestone {milestone_number} not found")

        claimed = await self._claim_settlement(order_id, rules.can_release_funds)
        targets = [
            m
            for m in rules.paid_milestones(claimed)
            if milestone_number is None or m.milestone_number == milestone_number
        ]

        released: list[ReleasedMilestone] = []
        for milestone in targets:
            try:
                transfer = await self._transfer(claimed, milestone)
            except MarketplaceError as exc:
                await self._settlement_failed(
                    order_id,
                    exc,
                    "escrow.release_interrupted",
                    transfer_ids=[r.transfer_id for r in released],
                )
                raise
            released.append(transfer)
            await self._write_after_release(
                order_id, _milestone_released(transfer), released
            )

        released_numbers = {r.milestone_number for r in released}

        def finish(current: Order) -> OrderChange:
            plan = parse_order_metadata(current.metadata_json)
            plan.settling_since = None
            status = None
            if plan.all_released:
                status = next_order_status(current.status, "complete_order")
            elif released_numbers:
                status = next_order_status(current.status, "reopen_order")
            return OrderChange(status=status, metadata=plan.to_metadata())

        await self._write_after_release(order_id, finish, released)
        logger.info(
            "escrow.payment_released",
            order_id=str(order_id),
            milestones=sorted(released_numbers),
        )
        return released

    async def _release_without_plan(self, order_id: uuid.UUID) -> list[ReleasedMilestone]:
        claimed = await self._claim_settlement(order_id, rules.can_release_funds)
        metadata = NoPlan.model_validate(claimed.metadata_json or {})
        already = set(metadata.released_payment_ids or [])
        payments = [
            p
            for p in await self._payments.list_by_order(order_id, PaymentStatus.COMPLETED)
            if str(p.id) not in already
        ]

        released: list[ReleasedMilestone] = []
        for payment in payments:
            amount_to_provider = payment.amount - payment.commission
            try:
                transfer = await self._gateway.release(
                    ReleaseRequest(
                        transaction_id=payment.payment_gateway_ref,
                        recipient_id=claimed.provider_ids[0],
                        amount=amount_to_provider,
                        description=f"Payment for order {order_id} - Milestone 1",
                    )
                )
            except GatewayError as exc:
                await self._settlement_failed(
                    order_id,
                    exc,
                    "escrow.release_interrupted",
                    transfer_ids=[r.transfer_id for r in released],
                )
                raise
            released.append(
                ReleasedMilestone(
                    milestone_number=1,
                    amount=amount_to_provider,
                    commission=payment.commission,
                    transfer_id=transfer.transfer_id,
                )
            )
            await self._write_after_release(
                order_id, _payment_released(str(payment.id)), released
            )

        def complete(current: Order) -> OrderChange:
            metadata = parse_order_metadata(current.metadata_json)
            metadata.settling_since = None
            return OrderChange(
                status=next_order_status(current.status, "complete_order"),
                metadata=metadata.to_metadata(),
            )

        await self._write_after_release(order_id, complete, released)
        logger.info(
            "escrow.payment_released",
            order_id=str(order_id),
            payments=len(released),
            legacy=True,
        )
        return released

    async def _transfer(self, order: Order, milestone: Milestone) -> ReleasedMilestone:
        payment = None
        if milestone.payment_id:
            payment = await self._payments.get_by_id(uuid.UUID(milestone.payment_id))
        if payment is None:
            raise PaymentNotFoundError(milestone.payment_id or milestone.transaction_id or "")

        amount_to_provider = payment.amount - payment.commission
        transfer = await self._gateway.release(
            ReleaseRequest(
                transaction_id=milestone.transaction_id or payment.payment_gateway_ref,
                recipient_id=order.provider_ids[0],
                amount=amount_to_provider,
                description=(
                    f"Payment for order {order.id} - Milestone {milestone.milestone_number}"
                ),
            )
        )
        return ReleasedMilestone(
            milestone_number=milestone.milestone_number,
            amount=amount_to_provider,
            commission=payment.commission,
            transfer_id=transfer.transfer_id,
        )

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund_payment(
        self,
        order_id: uuid.UUID,
        reason: str,
        actor_id: str | None = None,
    ) -> list[RefundedPayment]:
        """Refund every completed payment of a cancelled or disputed order.

        Each payment is marked ``refunded`` and committed as soon as the
        gateway accepts its refund, so a retry only refunds what is left.

        Raises:
            PreconditionError: If the order has no completed payment.
            SettlementInProgressError: If a release or refund of the order
                is already under way.
        """
        order = await self._orders.get_or_raise(order_id, fresh=True)
        if actor_id is not None:
            rules.ensure(rules.can_refund(order, actor_id))
        rules.ensure(rules.can_refund_funds(order))
        if not await self._payments.list_by_order(order_id, PaymentStatus.COMPLETED):
            raise PreconditionError("Order has no completed payments to refund")

        await self._claim_settlement(order_id, rules.can_refund_funds)

        refunded: list[RefundedPayment] = []
        for payment in await self._payments.list_by_order(order_id, PaymentStatus.COMPLETED):
            try:
                result = await self._gateway.refund(payment.payment_gateway_ref)
            except GatewayError as exc:
                await self._settlement_failed(
                    order_id,
                    exc,
                    "escrow.refund_interrupted",
                    refund_ids=[r.refund_id for r in refunded],
                )
                raise
            refunded.append(
                RefundedPayment(
                    payment_id=str(payment.id),
                    amount=payment.amount,
                    refund_id=result.transfer_id,
                )
            )
            try:
                await self._payments.update_status(payment, PaymentStatus.REFUNDED)
                await self._session.commit()
            except Exception:
                logger.error(
                    "escrow.refund_unrecorded",
                    order_id=str(order_id),
                    refund_ids=[r.refund_id for r in refunded],
                )
                raise

        refunded_at = datetime.now(UTC).isoformat()

        def record_refund(current: Order) -> OrderChange:
            metadata = parse_order_metadata(current.metadata_json)
            metadata.refund_reason = reason
            metadata.refunded_at = refunded_at
            metadata.settling_since = None
            return OrderChange(escrow_funded=False, metadata=metadata.to_metadata())

        try:
            await self._orders.apply(order_id, record_refund)
        except Exception:
            logger.error(
                "escrow.refund_unrecorded",
                order_id=str(order_id),
                refund_ids=[r.refund_id for r in refunded],
            )
            raise

        logger.info(
            "escrow.payment_refunded",
            order_id=str(order_id),
            payments=len(refunded),
            reason=reason,
        )
        return refunded

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_payment_status(
        self, order_id: uuid.UUID, actor_id: str
    ) -> PaymentStatusSummary:
        """Summarize an order's escrow for one of its participants."""
        order = await self._orders.get_or_raise(order_id, fresh=True)
        rules.ensure(rules.can_view_order(order, actor_id))

        metadata = parse_order_metadata(order.metadata_json)
        payments = await self._payments.list_by_order(order.id)
        return PaymentStatusSummary(
            order_id=str(order.id),
            order_status=order.status,
            agreed_price=order.agreed_price,
            currency=order.currency,
            escrow_funded=order.escrow_funded,
            milestones=None if isinstance(metadata, NoPlan) else metadata.milestones,
            payments=payments,
            progress=rules.payment_progress(order),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _plan_for(self, order: Order) -> MilestonePlan:
        """Return the persisted plan, computing and attaching one only if absent."""
        metadata = parse_order_metadata(order.metadata_json)
        if not isinstance(metadata, NoPlan):
            return metadata
        plan = compute_milestones(order.agreed_price, self._settings.milestone_threshold)
        if not rules.is_valid_milestone_data(plan.to_metadata()["milestones"]):
            raise StoreError(
                f"Computed an invalid milestone plan for order {order.id}",
                code="INVALID_MILESTONE_PLAN",
            )
        return attach_plan(metadata, plan)

    async def _collect(
        self,
        order: Order,
        plan: MilestonePlan,
        milestone: Milestone,
        return_url: str,
        callback_url: str,
    ) -> tuple[Payment, str]:
        """Initiate the gateway collection for one milestone and record it.

        Returns the new Payment and the checkout URL for the buyer.
        """
        total = len(plan.milestones)
        result = await self._gateway.initiate(
            InitiatePaymentRequest(
                amount=milestone.amount,
                currency=order.currency,
                order_id=str(order.id),
                customer_id=order.buyer_id,
                description=(
                    f"Payment for Order {order.id} - Milestone {milestone.milestone_number}"
                ),
                return_url=return_url,
                callback_url=callback_url,
                metadata={
                    "orderId": str(order.id),
                    "buyerId": order.buyer_id,
                    "providerId": order.provider_ids[0] if order.provider_ids else None,
                    "milestoneNumber": milestone.milestone_number,
                    "totalMilestones": total,
                    "isMilestonePayment": total > 1,
                },
            )
        )

        payout = rules.calculate_provider_payout(
            milestone.amount, self._settings.platform_commission_rate
        )
        payment = await self._payments.create(
            Payment(
                order_id=order.id,
                amount=milestone.amount,
                commission=payout.commission,
                status=PaymentStatus.PENDING.value,
                payment_gateway=self._gateway.name,
                payment_gateway_ref=result.transaction_id,
            )
        )
        return payment, result.payment_url

    async def _claim_settlement(
        self, order_id: uuid.UUID, gate: Callable[[Order], rules.RuleResult]
    ) -> Order:
        """Claim the order for a release or refund and commit the claim.

        Two claimants reading the same version race on the conditional
        write; the loser re-reads the order, finds the claim and stops.
        """
        since = datetime.now(UTC).isoformat()

        def claim(current: Order) -> OrderChange:
            rules.ensure(gate(current))
            if rules.is_settling(current):
                raise SettlementInProgressError(str(current.id))
            metadata = parse_order_metadata(current.metadata_json)
            metadata.settling_since = since
            return OrderChange(metadata=metadata.to_metadata())

        claimed, _ = await self._orders.apply(order_id, claim)
        await self._session.commit()
        logger.info("escrow.settlement_claimed", order_id=str(order_id))
        return claimed

    async def _settlement_failed(
        self,
        order_id: uuid.UUID,
        exc: MarketplaceError,
        event: str,
        **executed: list[str],
    ) -> None:
        """Log a settlement that stopped part way and free the claim if it is safe.

        The claim is kept when the gateway never answered, since the money
        may have moved; the order then needs reconciling by an operator.
        """
        unanswered = isinstance(exc, GatewayError) and exc.status_code is None
        logger.error(
            event,
            order_id=str(order_id),
            error=exc.message,
            claim_kept=unanswered,
            **executed,
        )
        if unanswered:
            return

        def release_claim(current: Order) -> OrderChange:
            metadata = parse_order_metadata(current.metadata_json)
            metadata.settling_since = None
            return OrderChange(metadata=metadata.to_metadata())

        await self._orders.apply(order_id, release_claim)
        await self._session.commit()

    async def _write_after_gateway(
        self, order_id: uuid.UUID, mutate: OrderMutation, payment: Payment
    ) -> OrderChange:
        try:
            _, change = await self._orders.apply(order_id, mutate)
        except Exception:
            logger.error(
                "escrow.payment_unrecorded",
                order_id=str(order_id),
                transaction_id=payment.payment_gateway_ref,
            )
            raise
        return change

    async def _write_after_release(
        self,
        order_id: uuid.UUID,
        mutate: OrderMutation,
        released: list[ReleasedMilestone],
    ) -> None:
        """Write and commit an order change that follows executed transfers."""
        try:
            await self._orders.apply(order_id, mutate)
            await self._session.commit()
        except Exception:
            logger.error(
                "escrow.release_unrecorded",
                order_id=str(order_id),
                transfer_ids=[r.transfer_id for r in released],
            )
            raise


def _milestone_released(transfer: ReleasedMilestone) -> OrderMutation:
    def mark(current: Order) -> OrderChange:
        plan = parse_order_metadata(current.metadata_json)
        milestone = plan.milestone(transfer.milestone_number)
        milestone.advance("release_funds")
        milestone.transfer_id = transfer.transfer_id
        return OrderChange(metadata=plan.to_metadata())

    return mark


def _payment_released(payment_id: str) -> OrderMutation:
    def mark(current: Order) -> OrderChange:
        metadata = NoPlan.model_validate(current.metadata_json or {})
        metadata.released_payment_ids = [*(metadata.released_payment_ids or []), payment_id]
        return OrderChange(metadata=metadata.to_metadata())

    return mark
