"""Event log collaborator.

Every applied or rejected status change, and every money movement, is
written to ``deal_events``. Applied events share the caller's transaction
so they commit or roll back with the change they describe. Rejections are
written through an independent session so they survive the rollback that
follows the rejected request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from escrow_engine.domain.enums import EventType
from escrow_engine.infrastructure.database.engine import session_scope
from escrow_engine.infrastructure.database.repositories import EventRepository
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.results import TransitionContext
    from escrow_engine.infrastructure.database.orm_models import DealEvent

logger = get_logger(__name__)


class AuditLog:
    """Writes deal events."""

    def __init__(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session = session
        self._session_factory = session_factory
        self._event_repo = EventRepository(session)

    async def log_event(
        self,
        deal_id: uuid.UUID,
        actor_type: str,
        actor_id: str,
        event_type: EventType,
        payload: dict | None = None,
        request_meta: dict | None = None,
        old_status: str | None = None,
        new_status: str | None = None,
    ) -> DealEvent:
        return await self._event_repo.record(
            deal_id=deal_id,
            event_type=event_type,
            actor_type=actor_type,
            actor_id=actor_id,
            old_status=old_status,
            new_status=new_status,
            payload=payload,
            request_meta=request_meta,
        )

    async def log_context_event(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        event_type: EventType,
        payload: dict | None = None,
        old_status: str | None = None,
        new_status: str | None = None,
    ) -> DealEvent:
        return await self.log_event(
            deal_id=deal_id,
            actor_type=str(context.actor_role),
            actor_id=context.actor_id,
            event_type=event_type,
            payload=payload,
            request_meta=context.request_meta or None,
            old_status=old_status,
            new_status=new_status,
        )

    async def log_rejection(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        old_status: str,
        attempted_status: str,
        reason: str,
    ) -> None:
        """Record a rejected transition so it outlives the caller's rollback."""
        payload = {"attempted_status": attempted_status, "reason": reason}
        if context.reason:
            payload["actor_reason"] = context.reason

        if self._session_factory is None:
            await self.log_context_event(
                deal_id, context, EventType.TRANSITION_REJECTED, payload, old_status=old_status
            )
            return

        try:
            async with session_scope(self._session_factory) as audit_session:
                await EventRepository(audit_session).record(
                    deal_id=deal_id,
                    event_type=EventType.TRANSITION_REJECTED,
                    actor_type=str(context.actor_role),
                    actor_id=context.actor_id,
                    old_status=old_status,
                    new_status=None,
                    payload=payload,
                    request_meta=context.request_meta or None,
                )
        except SQLAlchemyError as exc:
            logger.error(
                "audit.rejection_write_failed",
                deal_id=deal_id,
                attempted=attempted_status,
                error=str(exc),
            )
