"""Application services - orchestrate domain rules, repositories and the gateway."""

from marketplace_escrow.services.escrow_service import (
    EscrowService,
    PaymentCompletion,
    PaymentInitiation,
    PaymentStatusSummary,
    RefundedPayment,
    ReleasedMilestone,
)
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.webhook_service import WebhookResult, WebhookService

__all__ = [
    "EscrowService",
    "OrderService",
    "PaymentCompletion",
    "PaymentInitiation",
    "PaymentStatusSummary",
    "RefundedPayment",
    "ReleasedMilestone",
    "WebhookResult",
    "WebhookService",
]
