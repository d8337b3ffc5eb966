"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Used by container healthchecks, load balancers, and monitoring systems.
Redis only backs the sweep lock, so a Redis outage degrades but does not
fail the service.
"""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from escrow_engine.infrastructure.database.engine import get_session_factory
from escrow_engine.infrastructure.redis_client import get_redis, ping_redis
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.system import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db_status = "unknown"

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        db_status = "healthy"
    except (SQLAlchemyError, OSError) as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if get_redis() is None:
        redis_status = "not configured"
    elif await ping_redis():
        redis_status = "healthy"
    else:
        redis_status = "unhealthy"

    if db_status != "healthy":
        overall = "unhealthy"
    elif redis_status != "healthy":
        overall = "degraded"
    else:
        overall = "ok"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
    )
