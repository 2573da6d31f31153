"""Pydantic API schemas."""

from marketplace_escrow.schemas.orders import (
    CreateOrderRequest,
    DisputeOrderRequest,
    HealthResponse,
    OrderResponse,
)
from marketplace_escrow.schemas.payments import (
    EscrowPaymentResponse,
    InitiatePaymentBody,
    PaymentStatusResponse,
    PaymentSummaryResponse,
    RefundPaymentBody,
    RefundPaymentResponse,
    ReleasePaymentBody,
    ReleasePaymentResponse,
    WebhookAckResponse,
    WebhookPayload,
)

__all__ = [
    "CreateOrderRequest",
    "DisputeOrderRequest",
    "EscrowPaymentResponse",
    "HealthResponse",
    "InitiatePaymentBody",
    "OrderResponse",
    "PaymentStatusResponse",
    "PaymentSummaryResponse",
    "RefundPaymentBody",
    "RefundPaymentResponse",
    "ReleasePaymentBody",
    "ReleasePaymentResponse",
    "WebhookAckResponse",
    "WebhookPayload",
]
