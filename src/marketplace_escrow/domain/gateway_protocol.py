"""Payment Gateway Protocol.

Defines the interface every payment gateway client must implement. This is a
Protocol (structural subtyping) so concrete clients, and the fakes used in
tests, don't need to inherit from a base class.

The domain layer has ZERO imports from httpx or any gateway SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class InitiatePaymentRequest:
    """Input to a payment collection.

    Attributes:
        amount: Amount to collect for one milestone.
        currency: ISO currency code of the order.
        order_id: Order the collection belongs to.
        customer_id: The paying buyer.
        description: Human-readable line shown on the gateway's checkout.
        return_url: Where the gateway sends the buyer after checkout.
        callback_url: Where the gateway delivers webhooks.
        metadata: Opaque values echoed back on webhooks.
    """

    amount: Decimal
    currency: str
    order_id: str
    customer_id: str
    description: str
    return_url: str
    callback_url: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitiatePaymentResult:
    """Gateway response to a collection request."""

    transaction_id: str
    payment_url: str
    reference: str = ""
    expires_at: str | None = None


@dataclass(frozen=True)
class PaymentStatusSnapshot:
    """Point-in-time status of a gateway transaction."""

    transaction_id: str
    status: str
    amount: Decimal
    currency: str
    reference: str = ""
    paid_at: str | None = None


@dataclass(frozen=True)
class ReleaseRequest:
    """Transfer of escrowed funds to a provider."""

    transaction_id: str
    recipient_id: str
    amount: Decimal
    description: str


@dataclass(frozen=True)
class TransferResult:
    """Gateway response to a release or refund."""

    transfer_id: str
    status: str
    processed_at: str | None = None


@runtime_checkable
class PaymentGateway(Protocol):
    """Protocol that all gateway clients must satisfy.

    Concrete implementations:
        - gateways/neero.py (Neero REST API)

    Every method raises GatewayError on a non-success response.
    """

    name: str

    async def initiate(self, request: InitiatePaymentRequest) -> InitiatePaymentResult:
        """Start collecting a payment into escrow."""
        ...

    async def get_status(self, transaction_id: str) -> PaymentStatusSnapshot:
        """Fetch the gateway's view of a transaction."""
        ...

    async def release(self, request: ReleaseRequest) -> TransferResult:
        """Pay escrowed funds out to a provider."""
        ...

    async def refund(
        self, transaction_id: str, amount: Decimal | None = None
    ) -> TransferResult:
        """Return collected funds to the buyer (full refund when amount is None)."""
        ...

    def verify_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        """Check a webhook body against its signature header."""
        ...
