"""Auto-Release Scheduler — the periodic sweep.

One run has three phases:

    autoRelease           deals whose deal-level grace deadline passed
    milestoneAutoApprove  delivered milestones whose review window lapsed
    payouts               PENDING and retryable FAILED payouts

Candidates are listed cheaply outside any lock. Each one is then handled
in its own transaction by the Release Engine, which locks the deal and
re-runs full eligibility, so a stale candidate is skipped rather than
released. A crash mid-sweep is harmless: released items are terminal and
ledger idempotency keys stop duplicate entries on the next run.
"""

from __future__ import annotations

import functools
import uuid
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import SQLAlchemyError

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.clock import utc_now
from escrow_engine.domain.enums import ActorRole
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DisputeActiveError,
    EscrowError,
    InvalidTransitionError,
    NotActiveMilestoneError,
    ReleaseNotEligibleError,
)
from escrow_engine.domain.results import ReleaseContext, SweepItemResult, SweepSummary
from escrow_engine.infrastructure.database.engine import session_scope
from escrow_engine.infrastructure.database.repositories import (
    DealRepository,
    MilestoneRepository,
)
from escrow_engine.infrastructure.redis_client import sweep_lock
from escrow_engine.logging_config import get_logger
from escrow_engine.services.milestone_service import MilestoneService
from escrow_engine.services.payout_service import retry_failed_payouts
from escrow_engine.services.release_service import ReleaseService

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.results import ReleaseResult
    from escrow_engine.services.payment_service import PaymentRail

logger = get_logger(__name__)

AUTO_RELEASE_ACTOR = "auto-release"

# Expected outcomes of re-checking a stale candidate.
_SKIP_ERRORS = (
    DisputeActiveError,
    ReleaseNotEligibleError,
    NotActiveMilestoneError,
    ConcurrentModificationError,
    InvalidTransitionError,
)


class AutoReleaseScheduler:
    """Runs the sweep. Stateless between runs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        rail: PaymentRail | None = None,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._rail = rail
        self._redis = redis

    async def run(self, now: datetime | None = None) -> dict | None:
        """Run every phase once. Returns None if another sweep holds the lock."""
        now = now or utc_now()
        sweep_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(sweep_id=sweep_id)
        try:
            async with sweep_lock(
                "auto-release",
                client=self._redis,
                ttl_seconds=self._settings.redis_sweep_lock_ttl_seconds,
            ) as acquired:
                if not acquired:
                    logger.info("sweep.already_running")
                    return None

                logger.info("sweep.started", now=now.isoformat())
                deals = await self.release_due_deals(now)
                milestones = await self.approve_due_milestones(now)
                payouts = await retry_failed_payouts(
                    self._session_factory, self._settings, self._rail
                )
        finally:
            structlog.contextvars.unbind_contextvars("sweep_id")

        logger.info(
            "sweep.completed",
            deals_processed=deals.processed,
            deals_released=deals.approved,
            milestones_processed=milestones.processed,
            milestones_approved=milestones.approved,
            milestones_skipped=milestones.skipped,
            payouts_issued=payouts.approved,
        )
        return {
            "autoRelease": {
                "processed": deals.processed,
                "results": [item.to_dict() for item in deals.results],
            },
            "milestoneAutoApprove": {
                "processed": milestones.processed,
                "approved": milestones.approved,
                "skipped": milestones.skipped,
            },
            "payouts": {
                "processed": payouts.processed,
                "issued": payouts.approved,
                "failed": payouts.failed,
            },
        }

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def release_due_deals(self, now: datetime) -> SweepSummary:
        summary = SweepSummary()
        async with self._session_factory() as session:
            deals = await DealRepository(session).list_auto_release_candidates(
                now, self._settings.sweep_batch_size
            )
            deal_ids = [deal.id for deal in deals]

        for deal_id in deal_ids:
            action = functools.partial(self._release_deal, deal_id=deal_id, now=now)
            summary.record(await self._run_item(deal_id, None, action))
        return summary

    async def approve_due_milestones(self, now: datetime) -> SweepSummary:
        summary = SweepSummary()
        async with self._session_factory() as session:
            milestones = await MilestoneRepository(session).list_auto_approve_candidates(
                now, self._settings.sweep_batch_size
            )
            candidates = [(m.deal_id, m.id) for m in milestones]

        for deal_id, milestone_id in candidates:
            action = functools.partial(self._approve_milestone, milestone_id=milestone_id, now=now)
            summary.record(await self._run_item(deal_id, milestone_id, action))
        return summary

    # ------------------------------------------------------------------
    # Per-item unit of work
    # ------------------------------------------------------------------

    async def _release_deal(
        self, session: AsyncSession, deal_id: uuid.UUID, now: datetime
    ) -> ReleaseResult:
        context = ReleaseContext(
            actor_id=AUTO_RELEASE_ACTOR,
            actor_role=ActorRole.SYSTEM,
            reason="grace period elapsed",
        )
        service = ReleaseService(session, self._settings, self._rail, self._session_factory)
        return await service.release(deal_id, None, context, now, automatic=True)

    async def _approve_milestone(
        self, session: AsyncSession, milestone_id: uuid.UUID, now: datetime
    ) -> ReleaseResult:
        service = MilestoneService(session, self._settings, self._rail, self._session_factory)
        return await service.auto_approve_milestone(milestone_id, now)

    async def _run_item(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID | None,
        action: Callable[[AsyncSession], Awaitable[ReleaseResult]],
    ) -> SweepItemResult:
        """Run one release in its own transaction and classify the outcome."""
        item = SweepItemResult(
            deal_id=str(deal_id),
            milestone_id=str(milestone_id) if milestone_id else None,
            outcome="released",
        )
        try:
            async with session_scope(self._session_factory) as session:
                result = await action(session)
        except _SKIP_ERRORS as exc:
            item.outcome = "skipped"
            item.detail = exc.message
            logger.info(
                "sweep.skipped",
                deal_id=deal_id,
                milestone_id=milestone_id,
                reason=exc.message,
            )
            return item
        except (EscrowError, SQLAlchemyError) as exc:
            item.outcome = "error"
            item.detail = getattr(exc, "code", type(exc).__name__)
            logger.exception("sweep.item_failed", deal_id=deal_id, milestone_id=milestone_id)
            return item

        if result.replayed:
            item.outcome = "skipped"
            item.detail = "already released"
        else:
            item.detail = f"net {result.net}"
        logger.info(
            "sweep.item_done",
            deal_id=deal_id,
            milestone_id=milestone_id,
            outcome=item.outcome,
        )
        return item
