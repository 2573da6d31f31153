"""Redis client for payment initiation idempotency keys.

Redis is optional: the app starts without it and ``is_redis_available``
reports False, in which case idempotency keys are not enforced.

Usage:
    from marketplace_escrow.infrastructure.redis_client import claim_idempotency_key

    if not await claim_idempotency_key(redis, key):
        raise DuplicateOperationError(key)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from marketplace_escrow.config import get_settings
from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


def idempotency_key(scope: str, key: str) -> str:
    return f"idempotency:{scope}:{key}"


async def claim_idempotency_key(
    redis: aioredis.Redis, scope: str, key: str, value: str = "1"
) -> bool:
    """Atomically record an idempotency key.

    Returns True if the key was new, False if it had already been used.
    """
    settings = get_settings()
    claimed = await redis.set(
        idempotency_key(scope, key),
        value,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(claimed)


async def release_idempotency_key(redis: aioredis.Redis, scope: str, key: str) -> None:
    """Forget a key so a failed operation can be retried with it."""
    await redis.delete(idempotency_key(scope, key))
