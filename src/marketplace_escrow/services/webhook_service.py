"""Webhook Service - verifies and routes gateway event deliveries.

Every delivery is checked against the gateway's signature before the body is
even parsed. Routing is by the closed WebhookEvent enumeration, one handler
per event:

    payment.completed   -> EscrowService.handle_payment_completed
    payment.failed      -> mark the matching Payment failed
    transfer.completed  -> logged only (no follow-through yet)
    transfer.failed     -> logged only (no follow-through yet)

Unknown event strings are logged and acknowledged so the gateway stops
redelivering them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import ValidationError

from marketplace_escrow.domain.enums import PaymentStatus, WebhookEvent
from marketplace_escrow.domain.exceptions import PreconditionError, SignatureError
from marketplace_escrow.infrastructure.database.repositories import PaymentRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.payments import WebhookPayload
from marketplace_escrow.services.escrow_service import EscrowService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.gateway_protocol import PaymentGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    """What the dispatcher did with one delivery."""

    event: str
    handled: bool
    detail: str = ""


class WebhookService:
    """Verifies, parses and dispatches webhook deliveries from one gateway."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway
        self._payments = PaymentRepository(session)
        self._escrow = EscrowService(session, gateway, settings)

    async def process(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        """Verify the signature, then parse and dispatch the payload.

        Raises:
            SignatureError: Missing or invalid signature (nothing is parsed).
            PreconditionError: The signed body is not a valid payload.
        """
        if not self._gateway.verify_signature(raw_body, signature):
            logger.warning(
                "webhook.invalid_signature",
                gateway=self._gateway.name,
                has_signature=bool(signature),
            )
            raise SignatureError()

        payload = self.parse(raw_body)
        logger.info(
            "webhook.received",
            gateway=self._gateway.name,
            webhook_event=payload.event,
            transaction_id=payload.transaction_id,
        )
        return await self.dispatch(payload)

    @staticmethod
    def parse(raw_body: bytes) -> WebhookPayload:
        try:
            data = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise PreconditionError(
                "Webhook body is not valid JSON", code="INVALID_PAYLOAD"
            ) from exc
        try:
            return WebhookPayload.model_validate(data)
        except ValidationError as exc:
            raise PreconditionError(
                f"Webhook payload is malformed: {exc.error_count()} error(s)",
                code="INVALID_PAYLOAD",
            ) from exc

    async def dispatch(self, payload: WebhookPayload) -> WebhookResult:
        """Route a verified payload to its handler."""
        try:
            event = WebhookEvent(payload.event)
        except ValueError:
            logger.warning(
                "webhook.unknown_event",
                webhook_event=payload.event,
                transaction_id=payload.transaction_id,
            )
            return WebhookResult(event=payload.event, handled=False, detail="unknown event")

        match event:
            case WebhookEvent.PAYMENT_COMPLETED:
                return await self._on_payment_completed(payload)
            case WebhookEvent.PAYMENT_FAILED:
                return await self._on_payment_failed(payload)
            case WebhookEvent.TRANSFER_COMPLETED | WebhookEvent.TRANSFER_FAILED:
                return self._on_transfer(event, payload)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_payment_completed(self, payload: WebhookPayload) -> WebhookResult:
        completion = await self._escrow.handle_payment_completed(payload.transaction_id)
        detail = "already processed" if completion.already_processed else ""
        return WebhookResult(
            event=WebhookEvent.PAYMENT_COMPLETED.value, handled=True, detail=detail
        )

    async def _on_payment_failed(self, payload: WebhookPayload) -> WebhookResult:
        payment = await self._payments.get_by_gateway_ref(payload.transaction_id)
        if payment is None:
            logger.warning(
                "webhook.payment_failed_unknown",
                transaction_id=payload.transaction_id,
            )
            return WebhookResult(
                event=WebhookEvent.PAYMENT_FAILED.value,
                handled=False,
                detail="payment not found",
            )

        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            logger.warning(
                "webhook.payment_failed_ignored",
                transaction_id=payload.transaction_id,
                status=payment.status,
            )
            return WebhookResult(
                event=WebhookEvent.PAYMENT_FAILED.value,
                handled=False,
                detail=f"payment already {payment.status}",
            )

        await self._payments.update_status(payment, PaymentStatus.FAILED)
        logger.info(
            "webhook.payment_failed",
            transaction_id=payload.transaction_id,
            payment_id=str(payment.id),
        )
        return WebhookResult(event=WebhookEvent.PAYMENT_FAILED.value, handled=True)

    def _on_transfer(self, event: WebhookEvent, payload: WebhookPayload) -> WebhookResult:
        # Transfer confirmations are not reconciled against releases/refunds yet.
        logger.info(
            "webhook.transfer_event",
            webhook_event=event.value,
            transaction_id=payload.transaction_id,
            status=payload.status,
        )
        return WebhookResult(event=event.value, handled=False, detail="not implemented")
