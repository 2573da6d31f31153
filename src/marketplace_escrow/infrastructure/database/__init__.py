"""Database infrastructure - engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    init_db,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    Base,
    Order,
    Payment,
)
from marketplace_escrow.infrastructure.database.repositories import (
    OrderChange,
    OrderRepository,
    PaymentRepository,
)

__all__ = [
    "Base",
    "Order",
    "Payment",
    "OrderChange",
    "OrderRepository",
    "PaymentRepository",
    "get_async_session",
    "init_db",
    "close_db",
]
