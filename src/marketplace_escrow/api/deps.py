"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the caller identity, the payment gateway, Redis and configuration.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import GatewayName
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.gateways import GatewayFactory
from marketplace_escrow.infrastructure.database.engine import get_async_session
from marketplace_escrow.infrastructure.redis_client import get_redis, is_redis_available


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
) -> str:
    """Return the caller's user id as set by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def get_payment_gateway() -> PaymentGateway:
    """Provide the gateway used to collect new payments."""
    return GatewayFactory.create(GatewayName.NEERO.value)


def get_redis_client() -> aioredis.Redis | None:
    """Provide the Redis client, or None when Redis is unavailable."""
    if not is_redis_available():
        return None
    return get_redis()


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_public_base_url(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> str:
    """Base URL used for gateway return and callback URLs."""
    return (settings.public_base_url or str(request.base_url)).rstrip("/")


def get_webhook_gateway(gateway: str) -> PaymentGateway:
    """Resolve the ``{gateway}`` path segment of the webhook route."""
    return GatewayFactory.create(gateway)
