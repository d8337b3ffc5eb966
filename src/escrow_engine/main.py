"""FastAPI application entry point for the escrow engine.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode).
    2. Running: Serve the REST API at /api/v1/* and the sweep trigger.
    3. Shutdown: Close database and Redis connections gracefully.

Run with:
    uv run uvicorn escrow_engine.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from redis.exceptions import RedisError

from escrow_engine.config import get_settings
from escrow_engine.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from escrow_engine.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis (sweeps run unlocked without it)
    from escrow_engine.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except (RedisError, OSError) as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Escrow Engine",
        description=(
            "Escrow deal lifecycle: custody ledger, milestone releases, "
            "dispute freezes and scheduled auto-release."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from escrow_engine.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_engine.api.routes.cron import router as cron_router
    from escrow_engine.api.routes.deals import router as deals_router
    from escrow_engine.api.routes.disputes import router as disputes_router
    from escrow_engine.api.routes.health import router as health_router
    from escrow_engine.api.routes.milestones import router as milestones_router
    from escrow_engine.api.routes.payouts import router as payouts_router

    app.include_router(health_router)
    app.include_router(deals_router)
    app.include_router(milestones_router)
    app.include_router(disputes_router)
    app.include_router(payouts_router)
    app.include_router(cron_router)

    return app


# The app instance used by Uvicorn
app = create_app()
