"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
services, the payment rail, Redis clients, configuration, and the acting
user taken from the request headers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, Header, Request

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.enums import ActorRole
from escrow_engine.domain.results import TransitionContext
from escrow_engine.infrastructure.database.engine import (
    get_async_session,
    get_session_factory,
)
from escrow_engine.infrastructure.redis_client import get_redis
from escrow_engine.services.deal_service import DealService
from escrow_engine.services.dispute_service import DisputeService
from escrow_engine.services.milestone_service import MilestoneService
from escrow_engine.services.payment_service import PaymentRail, get_payment_rail
from escrow_engine.services.payout_service import PayoutService
from escrow_engine.services.release_service import ReleaseService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the session factory for writes that must outlive the request transaction."""
    return get_session_factory()


def get_redis_client() -> aioredis.Redis | None:
    """Provide the Redis client."""
    return get_redis()


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_rail() -> PaymentRail:
    return get_payment_rail()


def get_actor(
    request: Request,
    x_actor_id: str = Header(..., min_length=1, max_length=64),
    x_actor_role: ActorRole = Header(...),
) -> TransitionContext:
    """Build the transition context for the calling user.

    Authentication happens upstream; the gateway forwards the verified
    identity as ``X-Actor-Id`` and ``X-Actor-Role``.
    """
    return TransitionContext(
        actor_id=x_actor_id,
        actor_role=x_actor_role,
        request_meta={
            "ip": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
            "request_id": request.headers.get("X-Request-ID"),
        },
    )


# --- Services ---


async def get_deal_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    rail: PaymentRail = Depends(get_rail),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> DealService:
    return DealService(session, settings, rail, session_factory)


async def get_release_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    rail: PaymentRail = Depends(get_rail),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> ReleaseService:
    return ReleaseService(session, settings, rail, session_factory)


async def get_milestone_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    rail: PaymentRail = Depends(get_rail),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> MilestoneService:
    return MilestoneService(session, settings, rail, session_factory)


async def get_dispute_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    rail: PaymentRail = Depends(get_rail),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> DisputeService:
    return DisputeService(session, settings, rail, session_factory)


async def get_payout_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    rail: PaymentRail = Depends(get_rail),
) -> PayoutService:
    return PayoutService(session, settings, rail)
