"""Release Engine — moves custody to the payee.

Eligibility is composed in a fixed order and the first failing gate wins:

    1. Dispute Freeze Guard (fails closed on lookup errors)
    2. deal status allows a release by this actor
    3. milestone checks: active index, delivery recorded, and for automatic
       releases the review window and revision history

``release()`` takes the deal row lock, replays a known idempotency key,
then re-runs the whole eligibility check before writing anything. The
ledger entry, fee entry, status change and payout record share one
transaction; a payout that fails at the rail stays FAILED on its record
and never undoes the release.
"""

from __future__ import annotations

import dataclasses
from decimal import Decimal
from typing import TYPE_CHECKING

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.clock import ensure_utc, utc_now
from escrow_engine.domain.enums import (
    SETTLED_MILESTONE_STATUSES,
    ActorRole,
    DealStatus,
    EventType,
    LedgerEntryType,
    MilestoneStatus,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DealNotFoundError,
    DisputeActiveError,
    IdempotencyConflictError,
    MilestoneNotFoundError,
    NotActiveMilestoneError,
    ReleaseNotEligibleError,
)
from escrow_engine.domain.milestones import next_unreleased_milestone, review_window_elapsed
from escrow_engine.domain.results import (
    Eligibility,
    ReleaseContext,
    ReleaseResult,
    TransitionContext,
)
from escrow_engine.domain.state_machine import can_transition
from escrow_engine.infrastructure.database.repositories import (
    DealRepository,
    MilestoneRepository,
    PayoutRepository,
)
from escrow_engine.infrastructure.notifications import Notification, queue_notification
from escrow_engine.logging_config import get_logger
from escrow_engine.services.audit import AuditLog
from escrow_engine.services.dispute_service import DisputeFreezeGuard
from escrow_engine.services.transition_service import TransitionService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.infrastructure.database.orm_models import (
        Deal,
        LedgerTransaction,
        Milestone,
    )
    from escrow_engine.services.payment_service import PaymentRail

logger = get_logger(__name__)

# Ineligibility reasons
FROZEN = "frozen by dispute"
LOOKUP_FAILED = "dispute lookup failed"
STATUS_NOT_RELEASABLE = "deal status does not allow release"
MILESTONE_RELEASE_REQUIRED = "milestone release required"
NOT_MILESTONE_DEAL = "deal has no milestones"
ALREADY_SETTLED = "milestone already settled"
NOT_ACTIVE = "not the active milestone"
NOT_DELIVERED = "no delivery recorded"
REVISION_AFTER_DELIVERY = "revision requested after delivery"
REVIEW_WINDOW_OPEN = "review window still open"
AUTO_APPROVE_DISABLED = "auto-approve disabled"
GRACE_NOT_ELAPSED = "grace period not elapsed"
NOTHING_IN_CUSTODY = "nothing in custody"

_MILESTONE_RELEASE_STATUSES: dict[ActorRole, frozenset[DealStatus]] = {
    ActorRole.PAYER: frozenset({DealStatus.PROOF_SUBMITTED, DealStatus.UNDER_REVIEW}),
    ActorRole.SYSTEM: frozenset({DealStatus.PROOF_SUBMITTED, DealStatus.UNDER_REVIEW}),
    ActorRole.ADMIN: frozenset(
        {DealStatus.PROOF_SUBMITTED, DealStatus.UNDER_REVIEW, DealStatus.RESOLVED}
    ),
}

_RELEASE_ENTRY_TYPES = {
    LedgerEntryType.RELEASE_TO_PAYEE.value,
    LedgerEntryType.SPLIT_RELEASE.value,
}


def default_release_key(deal_id: uuid.UUID, milestone_id: uuid.UUID | None = None) -> str:
    """Key shared by every release path for the same deal or milestone."""
    return f"release:{deal_id}:{milestone_id or 'deal'}"


class ReleaseService:
    """Computes release eligibility and performs releases."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        rail: PaymentRail | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._deal_repo = DealRepository(session)
        self._milestone_repo = MilestoneRepository(session)
        self._payout_repo = PayoutRepository(session)
        self._transitions = TransitionService(session, self._settings, rail, session_factory)
        self._guard = DisputeFreezeGuard(session)
        self._audit = AuditLog(session)

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    async def compute_eligibility(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID | None = None,
        actor_role: ActorRole = ActorRole.SYSTEM,
        now: datetime | None = None,
        automatic: bool = False,
    ) -> Eligibility:
        """Answer whether a release would be allowed right now, without locking.

        The answer is advisory: ``release()`` repeats the check under the lock.
        """
        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        milestone = await self._get_milestone_or_raise(deal, milestone_id) if milestone_id else None
        return await self._evaluate(deal, milestone, actor_role, now or utc_now(), automatic)

    async def _evaluate(
        self,
        deal: Deal,
        milestone: Milestone | None,
        actor_role: ActorRole,
        now: datetime,
        automatic: bool,
    ) -> Eligibility:
        freeze = await self._guard.is_frozen(deal.id, milestone.id if milestone else None)
        if freeze.frozen:
            reason = LOOKUP_FAILED if freeze.reason == "lookup_failed" else FROZEN
            return Eligibility(False, reason, freeze.dispute_id)

        status = DealStatus(deal.status)
        if milestone is None:
            return await self._evaluate_deal(deal, status, actor_role, now, automatic)
        return await self._evaluate_milestone(deal, milestone, status, actor_role, now, automatic)

    async def _evaluate_deal(
        self,
        deal: Deal,
        status: DealStatus,
        actor_role: ActorRole,
        now: datetime,
        automatic: bool,
    ) -> Eligibility:
        if deal.allows_partial_release:
            return Eligibility(False, MILESTONE_RELEASE_REQUIRED)
        if not can_transition(status, DealStatus.RELEASED, actor_role):
            return Eligibility(False, STATUS_NOT_RELEASABLE)
        if automatic and (
            deal.auto_release_at is None or ensure_utc(deal.auto_release_at) > now
        ):
            return Eligibility(False, GRACE_NOT_ELAPSED)
        if await self._transitions.settlement.custody(deal) <= 0:
            return Eligibility(False, NOTHING_IN_CUSTODY)
        return Eligibility(True)

    async def _evaluate_milestone(
        self,
        deal: Deal,
        milestone: Milestone,
        status: DealStatus,
        actor_role: ActorRole,
        now: datetime,
        automatic: bool,
    ) -> Eligibility:
        if not deal.allows_partial_release:
            return Eligibility(False, NOT_MILESTONE_DEAL)
        if status not in _MILESTONE_RELEASE_STATUSES.get(actor_role, frozenset()):
            return Eligibility(False, STATUS_NOT_RELEASABLE)
        if milestone.status in SETTLED_MILESTONE_STATUSES:
            return Eligibility(False, ALREADY_SETTLED)

        milestones = await self._milestone_repo.list_for_deal(deal.id)
        if next_unreleased_milestone(milestones) != milestone.index:
            return Eligibility(False, NOT_ACTIVE)

        if actor_role is ActorRole.ADMIN and status is DealStatus.RESOLVED:
            return Eligibility(True)

        if milestone.status != MilestoneStatus.DELIVERED or milestone.delivered_at is None:
            return Eligibility(False, NOT_DELIVERED)

        if automatic:
            if not milestone.auto_approve:
                return Eligibility(False, AUTO_APPROVE_DISABLED)
            delivered_at = ensure_utc(milestone.delivered_at)
            revisions = await self._milestone_repo.list_revisions(milestone.id)
            if any(ensure_utc(r.created_at) > delivered_at for r in revisions):
                return Eligibility(False, REVISION_AFTER_DELIVERY)
            window = self._review_window_days(milestone)
            if not review_window_elapsed(delivered_at, window, now):
                return Eligibility(False, REVIEW_WINDOW_OPEN)
        return Eligibility(True)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID | None = None,
        context: ReleaseContext | None = None,
        now: datetime | None = None,
        automatic: bool = False,
    ) -> ReleaseResult:
        """Release a deal's custody, or one milestone's amount, to the payee.

        Raises:
            DisputeActiveError: If an active dispute freezes the scope.
            NotActiveMilestoneError: If the milestone is not the active one.
            ReleaseNotEligibleError: For any other failed eligibility gate.
            ConcurrentModificationError: If the deal is no longer in the
                caller's expected status or another writer won the race.
            IdempotencyConflictError: If the key was used for another release.
        """
        now = now or utc_now()
        context = context or ReleaseContext(actor_id="system", actor_role=ActorRole.SYSTEM)
        key = context.idempotency_key or default_release_key(deal_id, milestone_id)

        deal = await self._transitions.lock_deal(deal_id)

        existing = await self._transitions.settlement.ledger.find_by_key(key)
        if existing is not None:
            return await self._replay(deal, existing, milestone_id, key)

        if context.expected_status is not None and deal.status != context.expected_status:
            raise ConcurrentModificationError(
                str(deal.id), expected=str(context.expected_status), actual=deal.status
            )

        milestone = await self._get_milestone_or_raise(deal, milestone_id) if milestone_id else None
        eligibility = await self._evaluate(deal, milestone, context.actor_role, now, automatic)
        if not eligibility.eligible:
            await self._raise_ineligible(deal, milestone, eligibility)

        if milestone is None:
            result = await self._release_deal(deal, context, now, key)
        else:
            result = await self._release_milestone(deal, milestone, context, now, key)

        queue_notification(
            self._session,
            Notification(
                kind="funds_released",
                deal_id=str(deal.id),
                recipients=(deal.payee_id, deal.payer_id),
                payload=result.to_dict(),
            ),
        )
        logger.info(
            "release.committed",
            deal_id=deal.id,
            milestone_id=milestone_id,
            gross=result.gross,
            net=result.net,
            deal_status=result.deal_status,
            actor_role=context.actor_role,
            automatic=automatic,
        )
        return result

    async def _release_deal(
        self, deal: Deal, context: ReleaseContext, now: datetime, key: str
    ) -> ReleaseResult:
        outcome = await self._transitions.transition(
            deal, DealStatus.RELEASED, context, now, idempotency_key=key
        )
        settled = outcome.settlement
        if settled is None:
            raise ReleaseNotEligibleError(str(deal.id), NOTHING_IN_CUSTODY)
        return ReleaseResult(
            deal_id=deal.id,
            milestone_id=None,
            ledger_entry_id=settled.entry.id,
            gross=settled.breakdown.gross,
            fee=settled.breakdown.fee,
            net=settled.breakdown.net,
            deal_status=DealStatus(deal.status),
            payout_id=settled.payout.id if settled.payout else None,
            payout_status=settled.payout.status if settled.payout else None,
        )

    async def _release_milestone(
        self,
        deal: Deal,
        milestone: Milestone,
        context: ReleaseContext,
        now: datetime,
        key: str,
    ) -> ReleaseResult:
        settled = await self._transitions.settlement.release_to_payee(
            deal, milestone.amount, context, milestone_id=milestone.id, idempotency_key=key
        )
        milestone.status = MilestoneStatus.RELEASED.value
        milestone.released_at = now
        await self._session.flush()
        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.MILESTONE_RELEASED,
            {"milestone_id": str(milestone.id), "index": milestone.index, "entry_id": str(settled.entry.id)},
        )

        milestones = await self._milestone_repo.list_for_deal(deal.id)
        follow_up = dataclasses.replace(context, expected_status=None)
        if next_unreleased_milestone(milestones) is None:
            await self._transitions.transition(deal, DealStatus.RELEASED, follow_up, now)
        elif DealStatus(deal.status) is not DealStatus.FUNDED:
            # The next milestone needs its own delivery.
            await self._transitions.transition(
                deal,
                DealStatus.FUNDED,
                TransitionContext(
                    actor_id=context.actor_id,
                    actor_role=ActorRole.SYSTEM,
                    reason=f"milestone {milestone.index} released",
                    request_meta=context.request_meta,
                ),
                now,
            )

        return ReleaseResult(
            deal_id=deal.id,
            milestone_id=milestone.id,
            ledger_entry_id=settled.entry.id,
            gross=settled.breakdown.gross,
            fee=settled.breakdown.fee,
            net=settled.breakdown.net,
            deal_status=DealStatus(deal.status),
            payout_id=settled.payout.id if settled.payout else None,
            payout_status=settled.payout.status if settled.payout else None,
        )

    async def _replay(
        self,
        deal: Deal,
        entry: LedgerTransaction,
        milestone_id: uuid.UUID | None,
        key: str,
    ) -> ReleaseResult:
        if (
            entry.deal_id != deal.id
            or entry.milestone_id != milestone_id
            or entry.type not in _RELEASE_ENTRY_TYPES
        ):
            raise IdempotencyConflictError(key)

        fee_entry = await self._transitions.settlement.ledger.find_by_key(f"{key}:fee")
        fee = fee_entry.amount if fee_entry is not None else Decimal("0.00")
        payout = await self._payout_repo.get_by_ledger_transaction(entry.id)
        logger.info("release.replayed", deal_id=deal.id, milestone_id=milestone_id, key=key)
        return ReleaseResult(
            deal_id=deal.id,
            milestone_id=milestone_id,
            ledger_entry_id=entry.id,
            gross=entry.amount,
            fee=fee,
            net=entry.amount - fee,
            deal_status=DealStatus(deal.status),
            payout_id=payout.id if payout else None,
            payout_status=payout.status if payout else None,
            replayed=True,
        )

    async def _raise_ineligible(
        self, deal: Deal, milestone: Milestone | None, eligibility: Eligibility
    ) -> None:
        logger.warning(
            "release.ineligible",
            deal_id=deal.id,
            milestone_id=milestone.id if milestone else None,
            reason=eligibility.reason,
        )
        if eligibility.reason in (FROZEN, LOOKUP_FAILED):
            raise DisputeActiveError(
                str(deal.id), str(eligibility.dispute_id) if eligibility.dispute_id else None
            )
        if eligibility.reason == NOT_ACTIVE and milestone is not None:
            milestones = await self._milestone_repo.list_for_deal(deal.id)
            raise NotActiveMilestoneError(milestone.index, next_unreleased_milestone(milestones))
        raise ReleaseNotEligibleError(str(deal.id), eligibility.reason or "not eligible")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _review_window_days(self, milestone: Milestone) -> int:
        if milestone.review_window_days is None:
            return self._settings.default_review_window_days
        return milestone.review_window_days

    async def _get_milestone_or_raise(self, deal: Deal, milestone_id: uuid.UUID) -> Milestone:
        milestone = await self._milestone_repo.get_by_id(milestone_id)
        if milestone is None or milestone.deal_id != deal.id:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone
