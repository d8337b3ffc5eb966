"""Milestone Engine — delivery, revision and approval of staged payments.

Only the active milestone (lowest index not yet released or refunded) can
be delivered, revised or released. The review window always runs from the
latest delivery, so a redelivery after a revision restarts it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.clock import ensure_utc, utc_now
from escrow_engine.domain.enums import (
    ActorRole,
    DealStatus,
    EventType,
    MilestoneStatus,
)
from escrow_engine.domain.exceptions import (
    DisputeActiveError,
    MilestoneNotFoundError,
    MilestoneStateError,
    NotActiveMilestoneError,
    ReviewWindowExpiredError,
    RevisionLimitExceededError,
)
from escrow_engine.domain.milestones import (
    next_unreleased_milestone,
    review_deadline,
    revisions_since,
)
from escrow_engine.domain.results import ReleaseContext
from escrow_engine.infrastructure.database.orm_models import (
    MilestoneDelivery,
    MilestoneRevision,
)
from escrow_engine.infrastructure.database.repositories import MilestoneRepository
from escrow_engine.infrastructure.notifications import Notification, queue_notification
from escrow_engine.logging_config import get_logger
from escrow_engine.services.audit import AuditLog
from escrow_engine.services.dispute_service import DisputeFreezeGuard
from escrow_engine.services.release_service import ReleaseService
from escrow_engine.services.transition_service import TransitionService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.results import ReleaseResult, TransitionContext
    from escrow_engine.infrastructure.database.orm_models import Deal, Milestone
    from escrow_engine.services.payment_service import PaymentRail

logger = get_logger(__name__)

AUTO_APPROVE_ACTOR = "auto-release"

_DELIVERABLE_STATUSES = frozenset(
    {MilestoneStatus.PENDING, MilestoneStatus.IN_REVISION, MilestoneStatus.DELIVERED}
)


class MilestoneService:
    """Delivery, revision and approval for milestone deals."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        rail: PaymentRail | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._milestone_repo = MilestoneRepository(session)
        self._transitions = TransitionService(session, self._settings, rail, session_factory)
        self._release = ReleaseService(session, self._settings, rail, session_factory)
        self._guard = DisputeFreezeGuard(session)
        self._audit = AuditLog(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_milestone(self, milestone_id: uuid.UUID) -> Milestone:
        milestone = await self._milestone_repo.get_by_id(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    async def list_milestones(self, deal_id: uuid.UUID) -> list[Milestone]:
        return await self._milestone_repo.list_for_deal(deal_id)

    async def active_milestone(self, deal_id: uuid.UUID) -> Milestone | None:
        milestones = await self._milestone_repo.list_for_deal(deal_id)
        active_index = next_unreleased_milestone(milestones)
        return next((m for m in milestones if m.index == active_index), None)

    async def list_deliveries(self, milestone_id: uuid.UUID) -> list[MilestoneDelivery]:
        return await self._milestone_repo.list_deliveries(milestone_id)

    async def list_revisions(self, milestone_id: uuid.UUID) -> list[MilestoneRevision]:
        return await self._milestone_repo.list_revisions(milestone_id)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def submit_delivery(
        self,
        milestone_id: uuid.UUID,
        context: TransitionContext,
        asset_ids: list[str],
        note: str | None = None,
        now: datetime | None = None,
    ) -> MilestoneDelivery:
        """Record a delivery for the active milestone and put the deal up for review."""
        now = now or utc_now()
        if context.actor_role is not ActorRole.PAYEE:
            raise MilestoneStateError("Only the payee can deliver a milestone")

        deal, milestone = await self._lock_active_milestone(milestone_id)
        if MilestoneStatus(milestone.status) not in _DELIVERABLE_STATUSES:
            raise MilestoneStateError(
                f"Milestone {milestone.index} cannot be delivered while {milestone.status}"
            )

        status = DealStatus(deal.status)
        if status in (DealStatus.FUNDED, DealStatus.UNDER_REVIEW):
            await self._transitions.transition(deal, DealStatus.PROOF_SUBMITTED, context, now)
        elif status is not DealStatus.PROOF_SUBMITTED:
            await self._transitions.ensure_allowed(deal, DealStatus.PROOF_SUBMITTED, context)

        delivery = await self._milestone_repo.add_delivery(
            MilestoneDelivery(
                milestone_id=milestone.id,
                deal_id=deal.id,
                submitted_by=context.actor_id,
                asset_ids=list(asset_ids),
                note=note,
                submitted_at=now,
            )
        )
        milestone.status = MilestoneStatus.DELIVERED.value
        milestone.delivered_at = now
        await self._session.flush()

        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.MILESTONE_DELIVERED,
            {
                "milestone_id": str(milestone.id),
                "index": milestone.index,
                "delivery_id": str(delivery.id),
                "asset_count": len(delivery.asset_ids or []),
            },
        )
        logger.info(
            "milestone.delivered",
            deal_id=deal.id,
            milestone_id=milestone.id,
            index=milestone.index,
        )
        return delivery

    # ------------------------------------------------------------------
    # Revision
    # ------------------------------------------------------------------

    async def request_revision(
        self,
        milestone_id: uuid.UUID,
        context: TransitionContext,
        note: str = "",
        now: datetime | None = None,
    ) -> MilestoneRevision:
        """Ask the payee to rework the active milestone's latest delivery.

        Raises:
            NotActiveMilestoneError: If the milestone is not the active one.
            ReviewWindowExpiredError: If the window from the latest delivery
                has closed.
            RevisionLimitExceededError: If the milestone already used its
                revisions since the last release.
        """
        now = now or utc_now()
        if context.actor_role is not ActorRole.PAYER:
            raise MilestoneStateError("Only the payer can request a revision")

        deal, milestone = await self._lock_active_milestone(milestone_id)
        if milestone.status != MilestoneStatus.DELIVERED or milestone.delivered_at is None:
            raise MilestoneStateError(f"Milestone {milestone.index} has no delivery to revise")

        deadline = review_deadline(ensure_utc(milestone.delivered_at), milestone.review_window_days)
        if now > deadline:
            raise ReviewWindowExpiredError(str(milestone.id), deadline.isoformat())

        revisions = await self._milestone_repo.list_revisions(milestone.id)
        used = revisions_since(
            (ensure_utc(r.created_at) for r in revisions),
            await self._last_release_at(deal),
        )
        if used >= milestone.revision_limit:
            raise RevisionLimitExceededError(str(milestone.id), milestone.revision_limit)

        status = DealStatus(deal.status)
        if status is DealStatus.PROOF_SUBMITTED:
            await self._transitions.transition(deal, DealStatus.UNDER_REVIEW, context, now)
        elif status is not DealStatus.UNDER_REVIEW:
            await self._transitions.ensure_allowed(deal, DealStatus.UNDER_REVIEW, context)

        revision = await self._milestone_repo.add_revision(
            MilestoneRevision(
                milestone_id=milestone.id,
                deal_id=deal.id,
                requested_by=context.actor_id,
                note=note,
                created_at=now,
            )
        )
        milestone.status = MilestoneStatus.IN_REVISION.value
        deal.auto_release_at = None
        await self._session.flush()

        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.REVISION_REQUESTED,
            {
                "milestone_id": str(milestone.id),
                "revision_id": str(revision.id),
                "count": used + 1,
                "limit": milestone.revision_limit,
                "note": note,
            },
        )
        queue_notification(
            self._session,
            Notification(
                kind="revision_requested",
                deal_id=str(deal.id),
                recipients=(deal.payee_id,),
                payload={"milestone_id": str(milestone.id), "note": note},
            ),
        )
        logger.info(
            "milestone.revision_requested",
            deal_id=deal.id,
            milestone_id=milestone.id,
            count=used + 1,
            limit=milestone.revision_limit,
        )
        return revision

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def approve_milestone(
        self,
        milestone_id: uuid.UUID,
        context: ReleaseContext,
        now: datetime | None = None,
    ) -> ReleaseResult:
        milestone = await self.get_milestone(milestone_id)
        result = await self._release.release(milestone.deal_id, milestone.id, context, now)
        if not result.replayed:
            await self._audit.log_context_event(
                milestone.deal_id,
                context,
                EventType.MILESTONE_APPROVED,
                {"milestone_id": str(milestone.id), "index": milestone.index},
            )
        return result

    async def auto_approve_milestone(
        self,
        milestone_id: uuid.UUID,
        now: datetime | None = None,
    ) -> ReleaseResult:
        """Release a milestone whose review window lapsed without objection."""
        milestone = await self.get_milestone(milestone_id)
        context = ReleaseContext(
            actor_id=AUTO_APPROVE_ACTOR,
            actor_role=ActorRole.SYSTEM,
            reason="review window elapsed",
        )
        result = await self._release.release(
            milestone.deal_id, milestone.id, context, now, automatic=True
        )
        if not result.replayed:
            await self._audit.log_context_event(
                milestone.deal_id,
                context,
                EventType.MILESTONE_AUTO_APPROVED,
                {"milestone_id": str(milestone.id), "index": milestone.index},
            )
        return result

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _lock_active_milestone(self, milestone_id: uuid.UUID) -> tuple[Deal, Milestone]:
        """Lock the milestone's deal and check the milestone is the active, unfrozen one."""
        milestone = await self.get_milestone(milestone_id)
        deal = await self._transitions.lock_deal(milestone.deal_id)
        if not deal.allows_partial_release:
            raise MilestoneStateError("Deal has no milestones")

        freeze = await self._guard.is_frozen(deal.id, milestone.id)
        if freeze.frozen:
            raise DisputeActiveError(
                str(deal.id), str(freeze.dispute_id) if freeze.dispute_id else None
            )

        milestones = await self._milestone_repo.list_for_deal(deal.id)
        active_index = next_unreleased_milestone(milestones)
        milestone = next(m for m in milestones if m.id == milestone.id)
        if milestone.index != active_index:
            raise NotActiveMilestoneError(milestone.index, active_index)
        return deal, milestone

    async def _last_release_at(self, deal: Deal) -> datetime | None:
        released = [
            ensure_utc(m.released_at)
            for m in await self._milestone_repo.list_for_deal(deal.id)
            if m.released_at is not None
        ]
        return max(released) if released else None
