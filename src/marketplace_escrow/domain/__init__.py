"""Domain layer - pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.enums import (
    GatewayName,
    MilestoneStatus,
    OrderStatus,
    PaymentStatus,
    WebhookEvent,
)
from marketplace_escrow.domain.exceptions import (
    ConcurrentUpdateError,
    GatewayError,
    InvalidStateTransitionError,
    MarketplaceError,
    NotAuthorizedError,
    OrderNotFoundError,
    PaymentNotFoundError,
    PreconditionError,
    SettlementInProgressError,
)
from marketplace_escrow.domain.gateway_protocol import (
    InitiatePaymentRequest,
    InitiatePaymentResult,
    PaymentGateway,
    ReleaseRequest,
    TransferResult,
)
from marketplace_escrow.domain.milestones import (
    Milestone,
    NoPlan,
    SinglePaymentPlan,
    TwoMilestonePlan,
    compute_milestones,
    parse_order_metadata,
)
from marketplace_escrow.domain.state_machine import (
    MilestoneStateMachine,
    OrderStateMachine,
    next_order_status,
)

__all__ = [
    "GatewayName",
    "MilestoneStatus",
    "OrderStatus",
    "PaymentStatus",
    "WebhookEvent",
    "ConcurrentUpdateError",
    "GatewayError",
    "InvalidStateTransitionError",
    "MarketplaceError",
    "NotAuthorizedError",
    "OrderNotFoundError",
    "PaymentNotFoundError",
    "PreconditionError",
    "SettlementInProgressError",
    "InitiatePaymentRequest",
    "InitiatePaymentResult",
    "PaymentGateway",
    "ReleaseRequest",
    "TransferResult",
    "Milestone",
    "NoPlan",
    "SinglePaymentPlan",
    "TwoMilestonePlan",
    "compute_milestones",
    "parse_order_metadata",
    "MilestoneStateMachine",
    "OrderStateMachine",
    "next_order_status",
]
