"""Payment gateway webhook route.

Routes:
    POST /api/webhooks/{gateway}  - Signed event delivery from a gateway

The raw body is read unparsed so the signature in ``x-{gateway}-signature``
can be checked against the exact bytes that were signed.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import get_db_session, get_webhook_gateway
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.payments import WebhookAckResponse
from marketplace_escrow.services.webhook_service import WebhookService

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


@router.post(
    "/{gateway}",
    response_model=WebhookAckResponse,
    summary="Receive a payment gateway webhook",
)
async def receive_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(get_webhook_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> WebhookAckResponse:
    """Verify, then dispatch one event. Unhandled events are still acknowledged."""
    raw_body = await request.body()
    signature = request.headers.get(f"x-{gateway.name}-signature")

    svc = WebhookService(session, gateway)
    result = await svc.process(raw_body, signature)
    return WebhookAckResponse(event=result.event, handled=result.handled)
