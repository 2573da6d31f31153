"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Orders are never written through ORM attribute assignment. A service hands
``OrderRepository.apply`` a pure function that reads a freshly loaded Order
and returns an OrderChange; the repository writes it with a conditional
UPDATE on ``version`` and re-runs the whole read-compute-write cycle when
another writer got there first.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from marketplace_escrow.domain.exceptions import (
    ConcurrentUpdateError,
    OrderNotFoundError,
    StoreError,
)
from marketplace_escrow.infrastructure.database.orm_models import Order, Payment
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import PaymentStatus

logger = get_logger(__name__)

WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class OrderChange:
    """Fields to write on an order; None leaves the column untouched.

    ``outcome`` is not persisted. It carries whatever the mutation wants to
    hand back to its caller (for instance the milestone it just paid).
    """

    status: str | None = None
    escrow_funded: bool | None = None
    metadata: dict[str, Any] | None = None
    outcome: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.status is None and self.escrow_funded is None and self.metadata is None


OrderMutation = Callable[[Order], OrderChange | None]


class OrderRepository:
    """Data access for orders."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order: Order) -> Order:
        """Insert a new order."""
        self._session.add(order)
        await self._session.flush()
        return order

    async def get_by_id(self, order_id: uuid.UUID, fresh: bool = False) -> Order | None:
        """Fetch an order by its UUID.

        With ``fresh=True`` the row is re-read from the database even if the
        session already holds the object.
        """
        stmt = select(Order).where(Order.id == order_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, order_id: uuid.UUID, fresh: bool = False) -> Order:
        order = await self.get_by_id(order_id, fresh=fresh)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    @retry(
        retry=retry_if_exception_type(ConcurrentUpdateError),
        stop=stop_after_attempt(WRITE_ATTEMPTS),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def apply(
        self, order_id: uuid.UUID, mutate: OrderMutation
    ) -> tuple[Order, OrderChange]:
        """Read the order, compute a change and write it conditionally.

        ``mutate`` may raise a domain error to abort; that error is not
        retried. A lost race raises ConcurrentUpdateError, which re-runs
        the cycle against the newer row (up to WRITE_ATTEMPTS times).
        """
        order = await self.get_or_raise(order_id, fresh=True)
        change = mutate(order) or OrderChange()
        if not change.is_empty:
            await self.write(order, change)
        return order, change

    async def write(self, order: Order, change: OrderChange) -> Order:
        """Write ``change`` if the stored version still matches ``order.version``.

        Raises:
            ConcurrentUpdateError: If the row was modified since it was read.
        """
        values: dict[Any, Any] = {
            Order.version: Order.version + 1,
            Order.updated_at: datetime.now(UTC),
        }
        if change.status is not None:
            values[Order.status] = change.status
        if change.escrow_funded is not None:
            values[Order.escrow_funded] = change.escrow_funded
        if change.metadata is not None:
            values[Order.metadata_json] = change.metadata

        result = await self._session.execute(
            update(Order)
            .where(Order.id == order.id, Order.version == order.version)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "order.write_conflict",
                order_id=str(order.id),
                seen_version=order.version,
            )
            raise ConcurrentUpdateError(str(order.id))

        await self._session.refresh(order)
        return order


class PaymentRepository:
    """Data access for gateway payments."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, payment: Payment) -> Payment:
        """Insert a new payment.

        Raises:
            StoreError: If the gateway reference is already recorded.
        """
        self._session.add(payment)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise StoreError(
                f"Payment already recorded for gateway reference "
                f"{payment.payment_gateway_ref}",
                code="DUPLICATE_GATEWAY_REF",
            ) from exc
        return payment

    async def get_by_id(self, payment_id: uuid.UUID) -> Payment | None:
        """Fetch a payment by its UUID."""
        result = await self._session.execute(
            select(Payment).where(Payment.id == payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_gateway_ref(self, gateway_ref: str) -> Payment | None:
        """Fetch the payment recorded for a gateway transaction id."""
        result = await self._session.execute(
            select(Payment)
            .where(Payment.payment_gateway_ref == gateway_ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_order(
        self, order_id: uuid.UUID, status: PaymentStatus | None = None
    ) -> list[Payment]:
        """Fetch the payments of an order, newest first."""
        stmt = select(Payment).where(Payment.order_id == order_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status.value)
        result = await self._session.execute(
            stmt.order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(self, payment: Payment, new_status: PaymentStatus) -> Payment:
        """Overwrite the status of a payment."""
        payment.status = new_status.value
        payment.updated_at = datetime.now(UTC)
        await self._session.flush()
        return payment
