"""Redis client for the sweep overlap lock and health checks.

The lock only keeps two sweeps from doing the same work at the same time.
Exactly-once release does not depend on it: that rests on the deal row
lock and the ledger's idempotency keys.

Usage:
    from escrow_engine.infrastructure.redis_client import sweep_lock

    async with sweep_lock("auto_release") as acquired:
        if acquired:
            ...
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from escrow_engine.config import get_settings
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

# Deletes the key only if we still own it.
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis | None:
    """Return the Redis client singleton, or None if it was never initialized."""
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


async def ping_redis() -> bool:
    client = get_redis()
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except RedisError as exc:
        logger.warning("redis.ping_failed", error=str(exc))
        return False


# --- Sweep Lock ---


@asynccontextmanager
async def sweep_lock(
    name: str,
    client: aioredis.Redis | None = None,
    ttl_seconds: int | None = None,
) -> AsyncIterator[bool]:
    """Hold a best-effort cross-process lock for the duration of a sweep.

    Yields True when this process owns the lock (or Redis is unavailable,
    in which case the sweep proceeds unlocked), False when another sweep
    holds it.
    """
    client = client if client is not None else get_redis()
    if client is None:
        logger.warning("sweep.lock_unavailable", lock=name, reason="redis not initialized")
        yield True
        return

    key = f"sweep-lock:{name}"
    token = str(uuid.uuid4())
    ttl = ttl_seconds or get_settings().redis_sweep_lock_ttl_seconds
    try:
        acquired = bool(await client.set(key, token, nx=True, ex=ttl))
    except RedisError as exc:
        logger.warning("sweep.lock_unavailable", lock=name, error=str(exc))
        yield True
        return

    if not acquired:
        logger.info("sweep.lock_held_elsewhere", lock=name)
        yield False
        return

    try:
        yield True
    finally:
        try:
            await client.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
        except RedisError as exc:
            logger.warning("sweep.lock_release_failed", lock=name, error=str(exc))
