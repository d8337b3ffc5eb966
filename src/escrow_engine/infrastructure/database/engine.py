"""Async database engine and session management.

Provides:
    - get_session_factory: sessionmaker bound to the engine (lazy singleton).
    - get_async_session: FastAPI dependency that yields a session per request.
    - session_scope: the same unit of work for code outside a request
      (scheduler items, audit writes that must survive a rollback).
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.

A unit of work commits on success and rolls back on error. After-commit
actions (payment rail calls) run once the commit has succeeded, each in a
fresh session. Notifications queued on the session are dispatched after
that. Both are dropped on rollback.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from escrow_engine.config import get_settings
from escrow_engine.infrastructure.notifications import discard_outbox, dispatch_outbox
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable

    AfterCommitAction = Callable[[async_sessionmaker[AsyncSession]], Awaitable[None]]

logger = get_logger(__name__)

# Module-level singletons (initialized lazily)
_engine = None
_session_factory = None

_AFTER_COMMIT_KEY = "after_commit_actions"


def _get_engine():
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"pool_pre_ping": True, "echo": settings.db_echo_sql}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
            )
        _engine = create_async_engine(settings.database_url, **kwargs)
        logger.info(
            "database.engine_created",
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=_get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


def after_commit(session: AsyncSession, action: AfterCommitAction) -> None:
    """Defer ``action`` until the session's unit of work has committed.

    The action receives the session factory so it can open its own
    transaction. It never runs if the unit of work rolls back.
    """
    session.info.setdefault(_AFTER_COMMIT_KEY, []).append(action)


def _take_after_commit(session: AsyncSession) -> list[AfterCommitAction]:
    return session.info.pop(_AFTER_COMMIT_KEY, [])


async def _run_after_commit(
    factory: async_sessionmaker[AsyncSession],
    actions: list[AfterCommitAction],
) -> None:
    for action in actions:
        try:
            await action(factory)
        except Exception as exc:
            # The commit stands; the retry sweep picks up whatever was left pending.
            logger.exception("database.after_commit_failed", action=repr(action), error=str(exc))


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Run one unit of work: commit, run after-commit actions, then notify."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            _take_after_commit(session)
            discard_outbox(session)
            raise
        actions = _take_after_commit(session)
    await _run_after_commit(factory, actions)
    dispatch_outbox(session)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    The session is automatically committed on success or rolled back on error.
    """
    async with session_scope(get_session_factory()) as session:
        yield session


async def init_db() -> None:
    """Initialize the database engine and create tables if they don't exist.

    Called during FastAPI's lifespan startup. Outside development the schema
    is owned by Alembic migrations.
    """
    from escrow_engine.infrastructure.database.orm_models import Base

    engine = _get_engine()
    settings = get_settings()

    if settings.is_development:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="schema managed by alembic")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
