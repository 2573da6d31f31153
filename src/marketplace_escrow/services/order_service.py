"""Order Service - order creation and the non-payment lifecycle edges.

Delivery, cancellation and disputes go through OrderStateMachine and the same
versioned write path as the escrow operations, so they cannot clobber a
concurrent webhook update of the milestone plan.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain import rules
from marketplace_escrow.domain.enums import OrderStatus
from marketplace_escrow.domain.exceptions import (
    NotAuthorizedError,
    PreconditionError,
    SettlementInProgressError,
)
from marketplace_escrow.domain.milestones import parse_order_metadata, quantize
from marketplace_escrow.domain.state_machine import next_order_status
from marketplace_escrow.infrastructure.database.orm_models import Order
from marketplace_escrow.infrastructure.database.repositories import (
    OrderChange,
    OrderRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class OrderService:
    """Manages orders outside of the payment flow."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._orders = OrderRepository(session)

    async def create_order(
        self,
        buyer_id: str,
        provider_ids: list[str],
        agreed_price: Decimal,
        currency: str,
        job_ids: list[str] | None = None,
    ) -> Order:
        """Create a new order in ``active`` state with no milestone plan."""
        if not provider_ids:
            raise PreconditionError("An order needs at least one provider")
        if buyer_id in provider_ids:
            raise PreconditionError("The buyer cannot be a provider on the same order")
        if not rules.is_supported_currency(currency, self._settings.supported_currency_list):
            raise PreconditionError(f"Unsupported currency: {currency}")
        rules.ensure(rules.validate_amount(agreed_price, self._settings.max_payment_amount))

        order = await self._orders.create(
            Order(
                buyer_id=buyer_id,
                provider_ids=list(provider_ids),
                job_ids=list(job_ids or []),
                agreed_price=quantize(agreed_price),
                currency=currency.upper(),
                status=OrderStatus.ACTIVE.value,
                escrow_funded=False,
                metadata_json=None,
            )
        )
        logger.info(
            "order.created",
            order_id=str(order.id),
            agreed_price=str(order.agreed_price),
            currency=order.currency,
        )
        return order

    async def get_order(self, order_id: uuid.UUID, actor_id: str) -> Order:
        order = await self._orders.get_or_raise(order_id)
        rules.ensure(rules.can_view_order(order, actor_id))
        return order

    async def mark_delivered(self, order_id: uuid.UUID, actor_id: str) -> Order:
        """Provider marks the work as delivered (active -> delivered)."""

        def deliver(current: Order) -> OrderChange:
            _ensure_not_settling(current)
            if actor_id not in current.provider_ids:
                raise NotAuthorizedError("Only a provider can mark the order delivered")
            return OrderChange(status=next_order_status(current.status, "mark_delivered"))

        order, _ = await self._orders.apply(order_id, deliver)
        logger.info("order.delivered", order_id=str(order_id), provider=actor_id)
        return order

    async def cancel_order(self, order_id: uuid.UUID, actor_id: str) -> Order:
        """Either party cancels an order that is still active or delivered."""

        def cancel(current: Order) -> OrderChange:
            rules.ensure(self._participant(current, actor_id, "cancel"))
            _ensure_not_settling(current)
            return OrderChange(status=next_order_status(current.status, "cancel_order"))

        order, _ = await self._orders.apply(order_id, cancel)
        logger.info("order.cancelled", order_id=str(order_id), actor=actor_id)
        return order

    async def dispute_order(
        self, order_id: uuid.UUID, actor_id: str, reason: str
    ) -> Order:
        """Either party raises a dispute; the reason is kept in the metadata."""

        def dispute(current: Order) -> OrderChange:
            rules.ensure(self._participant(current, actor_id, "dispute"))
            _ensure_not_settling(current)
            status = next_order_status(current.status, "raise_dispute")
            metadata = parse_order_metadata(current.metadata_json).to_metadata()
            metadata["disputeReason"] = reason
            return OrderChange(status=status, metadata=metadata)

        order, _ = await self._orders.apply(order_id, dispute)
        logger.info("order.disputed", order_id=str(order_id), actor=actor_id)
        return order

    @staticmethod
    def _participant(order: Order, actor_id: str, action: str) -> rules.RuleResult:
        if rules.is_participant(order, actor_id):
            return rules.OK
        return rules.RuleResult(
            valid=False,
            error=f"Only the buyer or a provider can {action} this order",
            unauthorized=True,
        )


def _ensure_not_settling(order: Order) -> None:
    """Lifecycle changes wait until a running release or refund has finished."""
    if rules.is_settling(order):
        raise SettlementInProgressError(str(order.id))
