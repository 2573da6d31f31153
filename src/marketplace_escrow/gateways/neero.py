"""Neero payment gateway client.

Talks to the Neero REST API over httpx. Every call opens a short-lived
AsyncClient so the client can be constructed per request without leaking
connections; tests pass an ``httpx.MockTransport`` via ``transport``.

Endpoints:
    POST /api/v1/payments/initiate
    GET  /api/v1/payments/{transaction_id}/status
    POST /api/v1/payments/release
    POST /api/v1/payments/{transaction_id}/refund

Requests carry ``Authorization: Bearer <api key>`` and
``X-Merchant-ID: <merchant id>``. Bodies use camelCase keys.

No retries happen here: a failed call surfaces as GatewayError and the caller
decides what to do.
"""

from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal
from typing import Any

import httpx

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.enums import GatewayName
from marketplace_escrow.domain.exceptions import GatewayError
from marketplace_escrow.domain.gateway_protocol import (
    InitiatePaymentRequest,
    InitiatePaymentResult,
    PaymentStatusSnapshot,
    ReleaseRequest,
    TransferResult,
)
from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)


def _money(value: Decimal) -> float:
    return float(value)


class NeeroGatewayClient:
    """Gateway client for the Neero API (satisfies PaymentGateway)."""

    name = GatewayName.NEERO.value

    def __init__(
        self,
        api_key: str | None = None,
        merchant_id: str | None = None,
        base_url: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = settings.neero_api_key if api_key is None else api_key
        self._merchant_id = (
            settings.neero_merchant_id if merchant_id is None else merchant_id
        )
        self._base_url = (base_url or settings.neero_base_url).rstrip("/")
        self._webhook_secret = (
            settings.neero_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._timeout = settings.neero_timeout_seconds if timeout is None else timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self._merchant_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initiate(self, request: InitiatePaymentRequest) -> InitiatePaymentResult:
        """Start collecting a payment into escrow."""
        body = {
            "amount": _money(request.amount),
            "currency": request.currency,
            "orderId": request.order_id,
            "customerId": request.customer_id,
            "description": request.description,
            "returnUrl": request.return_url,
            "callbackUrl": request.callback_url,
            "metadata": request.metadata,
        }
        data = await self._request("POST", "/api/v1/payments/initiate", json=body)
        result = InitiatePaymentResult(
            transaction_id=self._required(data, "transactionId"),
            payment_url=self._required(data, "paymentUrl"),
            reference=data.get("reference") or "",
            expires_at=data.get("expiresAt"),
        )
        logger.info(
            "neero.payment_initiated",
            order_id=request.order_id,
            transaction_id=result.transaction_id,
            amount=str(request.amount),
        )
        return result

    async def get_status(self, transaction_id: str) -> PaymentStatusSnapshot:
        """Fetch the gateway's view of a transaction."""
        data = await self._request("GET", f"/api/v1/payments/{transaction_id}/status")
        return PaymentStatusSnapshot(
            transaction_id=data.get("transactionId") or transaction_id,
            status=self._required(data, "status"),
            amount=Decimal(str(data.get("amount", 0))),
            currency=data.get("currency") or "",
            reference=data.get("reference") or "",
            paid_at=data.get("paidAt"),
        )

    async def release(self, request: ReleaseRequest) -> TransferResult:
        """Pay escrowed funds out to a provider."""
        body = {
            "transactionId": request.transaction_id,
            "recipientId": request.recipient_id,
            "amount": _money(request.amount),
            "description": request.description,
        }
        data = await self._request("POST", "/api/v1/payments/release", json=body)
        result = self._transfer(data)
        logger.info(
            "neero.payment_released",
            transaction_id=request.transaction_id,
            transfer_id=result.transfer_id,
            amount=str(request.amount),
        )
        return result

    async def refund(
        self, transaction_id: str, amount: Decimal | None = None
    ) -> TransferResult:
        """Return collected funds to the buyer (full refund when amount is None)."""
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = _money(amount)
        data = await self._request(
            "POST", f"/api/v1/payments/{transaction_id}/refund", json=body
        )
        result = self._transfer(data)
        logger.info(
            "neero.payment_refunded",
            transaction_id=transaction_id,
            refund_id=result.transfer_id,
        )
        return result

    def verify_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        """Check a webhook body against its HMAC-SHA256 hex signature."""
        if not signature or not self._webhook_secret:
            return False
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"), raw_payload, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "X-Merchant-ID": self._merchant_id,
            "Accept": "application/json",
        }

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if not self.is_configured:
            raise GatewayError("Neero gateway is not configured")

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.error("neero.request_failed", method=method, path=path, error=str(exc))
            raise GatewayError(f"Neero Gateway Error: {exc}") from exc

        data = self._json(response)
        if response.is_error:
            message = data.get("message") or response.reason_phrase
            logger.warning(
                "neero.request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                message=message,
            )
            raise GatewayError(
                f"Neero Gateway Error: {message}", status_code=response.status_code
            )
        return data

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _required(data: dict[str, Any], key: str) -> str:
        value = data.get(key)
        if not value:
            raise GatewayError(f"Neero Gateway Error: response missing '{key}'")
        return str(value)

    def _transfer(self, data: dict[str, Any]) -> TransferResult:
        return TransferResult(
            transfer_id=self._required(data, "transferId"),
            status=data.get("status") or "pending",
            processed_at=data.get("processedAt"),
        )
