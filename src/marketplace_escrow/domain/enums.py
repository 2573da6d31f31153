"""Domain enumerations for marketplace escrow.

These enums define the canonical states and tags used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class OrderStatus(enum.StrEnum):
    """Lifecycle states of an order.

    Transitions are enforced by OrderStateMachine (domain/state_machine.py).
    """

    ACTIVE = "active"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PaymentStatus(enum.StrEnum):
    """States of a single gateway transaction attempt."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class MilestoneStatus(enum.StrEnum):
    """States of one milestone inside an order's plan.

    Only ever advances PENDING -> PAID -> RELEASED.
    """

    PENDING = "pending"
    PAID = "paid"
    RELEASED = "released"


class WebhookEvent(enum.StrEnum):
    """Callback events delivered by the payment gateway."""

    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    TRANSFER_COMPLETED = "transfer.completed"
    TRANSFER_FAILED = "transfer.failed"


class GatewayName(enum.StrEnum):
    """Payment gateways the platform can route money through."""

    NEERO = "neero"
