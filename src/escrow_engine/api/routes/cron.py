"""Scheduled sweep trigger.

An external scheduler calls ``/api/v1/cron/process`` with
``Authorization: Bearer <CRON_SECRET>``. Without a configured secret the
endpoint refuses to run, except in the test environment.
"""

from __future__ import annotations

import hmac

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_engine.api.deps import (
    get_app_settings,
    get_db_session_factory,
    get_rail,
    get_redis_client,
)
from escrow_engine.config import Settings
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.system import SweepResponse
from escrow_engine.services.auto_release import AutoReleaseScheduler
from escrow_engine.services.payment_service import PaymentRail

router = APIRouter(prefix="/api/v1/cron", tags=["Cron"])
logger = get_logger(__name__)


def verify_cron_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Fail closed: no secret configured means no sweep, outside tests."""
    if not settings.cron_secret:
        if settings.is_test:
            return
        logger.error("cron.secret_not_configured")
        raise HTTPException(status_code=503, detail="Sweep trigger is not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.encode(), settings.cron_secret.encode()
    ):
        logger.warning("cron.unauthorized")
        raise HTTPException(status_code=401, detail="Invalid sweep credentials")


@router.api_route(
    "/process",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    dependencies=[Depends(verify_cron_secret)],
    summary="Run the auto-release, milestone auto-approve and payout retry sweep",
)
async def process(
    settings: Settings = Depends(get_app_settings),
    rail: PaymentRail = Depends(get_rail),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    redis: aioredis.Redis | None = Depends(get_redis_client),
) -> SweepResponse:
    scheduler = AutoReleaseScheduler(session_factory, settings, rail, redis)
    summary = await scheduler.run()
    if summary is None:
        return SweepResponse(status="skipped")
    return SweepResponse.model_validate(summary)
