"""Dispute Freeze Guard and dispute lifecycle.

The freeze guard answers one question: must money movement on this deal
(or this milestone) be blocked right now? Any dispute in an active status
(OPEN, NEGOTIATION, ADMIN_REVIEW, NEEDS_INFO) that covers the scope says
yes. A deal-wide dispute covers every milestone; a milestone dispute
covers only its milestone. If the lookup itself fails the answer is
"frozen": the guard never fails open.

Dispute lifecycle:
    open      payer or payee; the deal moves to DISPUTED. A milestone
              dispute must target the active milestone, which becomes DISPUTED.
    escalate  OPEN/NEGOTIATION/ADMIN_REVIEW/NEEDS_INFO among themselves.
    resolve   admin only; DISPUTED -> RESOLVED, then money moves per outcome:
              RELEASE -> payee, REFUND -> payer, SPLIT -> both, REJECT -> none.

After a deal settles, released money can still be taken back from the
payee: a chargeback reported by the card network, or an admin refund to
the payer. Neither reverses the release; both debit the payee's wallet,
which may go negative.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.clock import utc_now
from escrow_engine.domain.enums import (
    SETTLED_MILESTONE_STATUSES,
    ActorRole,
    DealStatus,
    DisputeOutcome,
    DisputeStatus,
    EventType,
    LedgerEntryType,
    MilestoneStatus,
)
from escrow_engine.domain.exceptions import (
    ClawbackNotAllowedError,
    DisputeNotFoundError,
    DisputeStateError,
    MilestoneNotFoundError,
    NotActiveMilestoneError,
)
from escrow_engine.domain.fees import to_money
from escrow_engine.domain.milestones import next_unreleased_milestone
from escrow_engine.domain.results import (
    ClawbackResult,
    FreezeStatus,
    ReleaseContext,
    TransitionContext,
)
from escrow_engine.infrastructure.database.orm_models import Dispute
from escrow_engine.infrastructure.database.repositories import (
    DisputeRepository,
    MilestoneRepository,
)
from escrow_engine.infrastructure.notifications import Notification, queue_notification
from escrow_engine.logging_config import get_logger
from escrow_engine.services.audit import AuditLog
from escrow_engine.services.transition_service import TransitionService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.infrastructure.database.orm_models import Deal, Milestone
    from escrow_engine.services.payment_service import PaymentRail

logger = get_logger(__name__)

ESCALATION_STATUSES = frozenset(
    {
        DisputeStatus.NEGOTIATION,
        DisputeStatus.ADMIN_REVIEW,
        DisputeStatus.NEEDS_INFO,
    }
)


class DisputeFreezeGuard:
    """Predicate: is money movement on a deal or milestone frozen?"""

    def __init__(self, session: AsyncSession) -> None:
        self._dispute_repo = DisputeRepository(session)

    async def is_frozen(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID | None = None,
    ) -> FreezeStatus:
        try:
            dispute = await self._dispute_repo.find_active(deal_id, milestone_id)
        except SQLAlchemyError as exc:
            logger.error(
                "freeze_guard.lookup_failed",
                deal_id=deal_id,
                milestone_id=milestone_id,
                error=str(exc),
            )
            return FreezeStatus(frozen=True, reason="lookup_failed")

        if dispute is not None:
            return FreezeStatus(frozen=True, dispute_id=dispute.id, reason="dispute_active")
        return FreezeStatus(frozen=False)


class DisputeService:
    """Opens, escalates and resolves disputes."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        rail: PaymentRail | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        # Imported here: the release engine itself depends on the freeze guard above.
        from escrow_engine.services.release_service import ReleaseService

        self._session = session
        self._settings = settings or get_settings()
        self._dispute_repo = DisputeRepository(session)
        self._milestone_repo = MilestoneRepository(session)
        self._transitions = TransitionService(session, self._settings, rail, session_factory)
        self._release = ReleaseService(session, self._settings, rail, session_factory)
        self._audit = AuditLog(session)
        self.guard = DisputeFreezeGuard(session)

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        reason: str,
        milestone_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        now = now or utc_now()
        if context.actor_role not in (ActorRole.PAYER, ActorRole.PAYEE):
            raise DisputeStateError("Only the payer or the payee can open a dispute")

        deal = await self._transitions.lock_deal(deal_id)

        milestone: Milestone | None = None
        if milestone_id is not None:
            milestone = await self._get_milestone_or_raise(deal, milestone_id)
            milestones = await self._milestone_repo.list_for_deal(deal.id)
            active_index = next_unreleased_milestone(milestones)
            if milestone.index != active_index:
                raise NotActiveMilestoneError(milestone.index, active_index)

        await self._transitions.transition(
            deal, DealStatus.DISPUTED, context, now, dispute_reason=reason
        )

        dispute = Dispute(
            deal_id=deal.id,
            milestone_id=milestone_id,
            status=DisputeStatus.OPEN.value,
            opened_by=context.actor_id,
            opener_role=str(context.actor_role),
            reason=reason,
        )
        dispute = await self._dispute_repo.create(dispute)
        if milestone is not None:
            milestone.status = MilestoneStatus.DISPUTED.value

        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.DISPUTE_OPENED,
            {
                "dispute_id": str(dispute.id),
                "milestone_id": str(milestone_id) if milestone_id else None,
                "reason": reason,
            },
        )
        logger.info(
            "dispute.opened",
            deal_id=deal.id,
            dispute_id=dispute.id,
            milestone_id=milestone_id,
            by=context.actor_id,
        )
        return dispute

    # ------------------------------------------------------------------
    # Escalate
    # ------------------------------------------------------------------

    async def escalate_dispute(
        self,
        dispute_id: uuid.UUID,
        status: DisputeStatus,
        context: TransitionContext,
        note: str | None = None,
    ) -> Dispute:
        if status not in ESCALATION_STATUSES:
            raise DisputeStateError(f"{status} is not an escalation status")
        dispute = await self._get_dispute_or_raise(dispute_id)
        await self._transitions.lock_deal(dispute.deal_id)
        dispute = await self._get_dispute_or_raise(dispute_id)
        if not dispute.is_active:
            raise DisputeStateError(f"Dispute {dispute_id} is already {dispute.status}")

        old_status = dispute.status
        dispute.status = status.value
        await self._session.flush()

        await self._audit.log_context_event(
            dispute.deal_id,
            context,
            EventType.DISPUTE_ESCALATED,
            {"dispute_id": str(dispute.id), "from": old_status, "to": status.value, "note": note},
        )
        logger.info("dispute.escalated", dispute_id=dispute.id, old=old_status, new=status)
        return dispute

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    async def resolve_dispute(
        self,
        dispute_id: uuid.UUID,
        outcome: DisputeOutcome,
        context: TransitionContext,
        note: str | None = None,
        payee_amount: Decimal | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """Close an active dispute and settle the money it covered.

        Raises:
            DisputeStateError: If the dispute is not active, the resolver is
                not an admin, or a split amount is missing or out of range.
            InvalidTransitionError: If the deal is not in DISPUTED.
        """
        now = now or utc_now()
        if context.actor_role is not ActorRole.ADMIN:
            raise DisputeStateError("Only an admin can resolve a dispute")

        dispute = await self._get_dispute_or_raise(dispute_id)
        deal = await self._transitions.lock_deal(dispute.deal_id)
        dispute = await self._get_dispute_or_raise(dispute_id)
        if not dispute.is_active:
            raise DisputeStateError(f"Dispute {dispute_id} is already {dispute.status}")

        milestone = (
            await self._get_milestone_or_raise(deal, dispute.milestone_id)
            if dispute.milestone_id is not None
            else None
        )
        if outcome is DisputeOutcome.SPLIT:
            cap = milestone.amount if milestone is not None else await self._transitions.settlement.custody(deal)
            if payee_amount is None or not Decimal(0) < to_money(payee_amount) < cap:
                raise DisputeStateError(f"Split payee amount must be between 0 and {cap}")
            payee_amount = to_money(payee_amount)

        await self._transitions.transition(deal, DealStatus.RESOLVED, context, now)

        # Close the dispute before moving money so the freeze lifts.
        dispute.status = outcome.dispute_status.value
        dispute.outcome = outcome.value
        dispute.payee_amount = payee_amount
        dispute.resolution_note = note
        dispute.resolved_by = context.actor_id
        dispute.resolved_at = now
        await self._session.flush()

        if milestone is not None:
            await self._settle_milestone(deal, milestone, dispute, outcome, context, now)
        else:
            await self._settle_deal(deal, dispute, outcome, context, now)

        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.DISPUTE_RESOLVED,
            {
                "dispute_id": str(dispute.id),
                "outcome": outcome.value,
                "payee_amount": format(payee_amount, "f") if payee_amount is not None else None,
                "note": note,
            },
        )
        queue_notification(
            self._session,
            Notification(
                kind="dispute_resolved",
                deal_id=str(deal.id),
                recipients=(deal.payer_id, deal.payee_id),
                payload={"dispute_id": str(dispute.id), "outcome": outcome.value},
            ),
        )
        logger.info(
            "dispute.resolved",
            deal_id=deal.id,
            dispute_id=dispute.id,
            outcome=outcome,
            deal_status=deal.status,
        )
        return dispute

    # ------------------------------------------------------------------
    # After release
    # ------------------------------------------------------------------

    async def record_chargeback(
        self,
        deal_id: uuid.UUID,
        amount: Decimal,
        context: TransitionContext,
        external_ref: str,
        reason: str | None = None,
    ) -> ClawbackResult:
        """Record a card-network chargeback against a settled deal.

        The payer already has the money back through the network, so only
        the payee's wallet is debited. Replaying the same ``external_ref``
        returns the first result.
        """
        if context.actor_role not in (ActorRole.SYSTEM, ActorRole.ADMIN):
            raise DisputeStateError("Only the system or an admin can record a chargeback")
        deal = await self._lock_settled_deal(deal_id)
        result = await self._transitions.settlement.claw_back(
            deal,
            to_money(amount),
            LedgerEntryType.CHARGEBACK,
            context,
            idempotency_key=f"chargeback:{external_ref}",
            event_type=EventType.CHARGEBACK_RECORDED,
            metadata={"external_ref": external_ref, "reason": reason},
        )
        if not result.replayed:
            self._notify_clawback(deal, result)
            logger.warning(
                "dispute.chargeback_recorded",
                deal_id=deal.id,
                amount=result.amount,
                external_ref=external_ref,
            )
        return result

    async def refund_after_release(
        self,
        deal_id: uuid.UUID,
        amount: Decimal,
        context: TransitionContext,
        note: str | None = None,
        idempotency_key: str | None = None,
    ) -> ClawbackResult:
        """Refund the payer out of money already released to the payee.

        Admin only. The payee's wallet is debited now and the payer is
        refunded on the rail after commit.
        """
        if context.actor_role is not ActorRole.ADMIN:
            raise DisputeStateError("Only an admin can refund a released deal")
        deal = await self._lock_settled_deal(deal_id)
        amount = to_money(amount)
        result = await self._transitions.settlement.claw_back(
            deal,
            amount,
            LedgerEntryType.POST_RELEASE_REFUND,
            context,
            idempotency_key=idempotency_key or f"post-release-refund:{deal.id}:{uuid4()}",
            event_type=EventType.POST_RELEASE_REFUNDED,
            metadata={"note": note},
            refund_payer=True,
        )
        if not result.replayed:
            self._notify_clawback(deal, result)
            logger.info("dispute.post_release_refund", deal_id=deal.id, amount=result.amount)
        return result

    async def _lock_settled_deal(self, deal_id: uuid.UUID) -> Deal:
        deal = await self._transitions.lock_deal(deal_id)
        if not DealStatus(deal.status).is_terminal:
            raise ClawbackNotAllowedError(str(deal.id), f"deal is still {deal.status}")
        return deal

    def _notify_clawback(self, deal: Deal, result: ClawbackResult) -> None:
        queue_notification(
            self._session,
            Notification(
                kind="funds_clawed_back",
                deal_id=str(deal.id),
                recipients=(deal.payee_id,),
                payload=result.to_dict(),
            ),
        )

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[Dispute]:
        return await self._dispute_repo.list_for_deal(deal_id)

    async def get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        return await self._get_dispute_or_raise(dispute_id)

    # ------------------------------------------------------------------
    # Settlement per outcome
    # ------------------------------------------------------------------

    async def _settle_deal(
        self,
        deal: Deal,
        dispute: Dispute,
        outcome: DisputeOutcome,
        context: TransitionContext,
        now: datetime,
    ) -> None:
        settlement = self._transitions.settlement

        if outcome is DisputeOutcome.REJECT:
            await self._transitions.transition(deal, DealStatus.FUNDED, context, now)
            return

        if outcome is DisputeOutcome.RELEASE:
            if deal.allows_partial_release:
                await self._release_remaining_milestones(deal, context, now)
            await self._transitions.transition(
                deal, DealStatus.RELEASED, context, now,
                idempotency_key=f"dispute:{dispute.id}:release",
            )
            return

        if outcome is DisputeOutcome.SPLIT:
            await settlement.release_to_payee(
                deal,
                dispute.payee_amount,
                context,
                idempotency_key=f"dispute:{dispute.id}:split",
                entry_type=LedgerEntryType.SPLIT_RELEASE,
            )
            remainder = await settlement.custody(deal)
            if remainder > 0:
                await settlement.refund_to_payer(
                    deal, remainder, context, idempotency_key=f"dispute:{dispute.id}:split-refund"
                )
            await self._mark_unsettled_milestones_refunded(deal)
            await self._transitions.transition(deal, DealStatus.RELEASED, context, now)
            return

        await self._mark_unsettled_milestones_refunded(deal)
        await self._transitions.transition(deal, DealStatus.REFUNDED, context, now)

    async def _settle_milestone(
        self,
        deal: Deal,
        milestone: Milestone,
        dispute: Dispute,
        outcome: DisputeOutcome,
        context: TransitionContext,
        now: datetime,
    ) -> None:
        settlement = self._transitions.settlement

        if outcome is DisputeOutcome.REJECT:
            milestone.status = (
                MilestoneStatus.IN_REVISION.value
                if milestone.delivered_at is not None
                else MilestoneStatus.PENDING.value
            )
            await self._transitions.transition(deal, DealStatus.FUNDED, context, now)
            return

        if outcome is DisputeOutcome.RELEASE:
            await self._release.release(
                deal.id,
                milestone.id,
                ReleaseContext(actor_id=context.actor_id, actor_role=ActorRole.ADMIN,
                               reason=f"dispute {dispute.id} resolved for payee"),
                now=now,
            )
            return

        if outcome is DisputeOutcome.SPLIT:
            await settlement.release_to_payee(
                deal,
                dispute.payee_amount,
                context,
                milestone_id=milestone.id,
                idempotency_key=f"dispute:{dispute.id}:split",
                entry_type=LedgerEntryType.SPLIT_RELEASE,
            )
            await settlement.refund_to_payer(
                deal,
                milestone.amount - dispute.payee_amount,
                context,
                milestone_id=milestone.id,
                idempotency_key=f"dispute:{dispute.id}:split-refund",
            )
            milestone.status = MilestoneStatus.RELEASED.value
            milestone.released_at = now
        else:
            await settlement.refund_to_payer(
                deal,
                milestone.amount,
                context,
                milestone_id=milestone.id,
                idempotency_key=f"dispute:{dispute.id}:refund",
            )
            milestone.status = MilestoneStatus.REFUNDED.value
            await self._audit.log_context_event(
                deal.id,
                context,
                EventType.MILESTONE_REFUNDED,
                {"milestone_id": str(milestone.id), "amount": format(milestone.amount, "f")},
            )
        await self._session.flush()
        await self._close_milestone_deal(deal, context, now)

    async def _release_remaining_milestones(
        self, deal: Deal, context: TransitionContext, now: datetime
    ) -> None:
        settlement = self._transitions.settlement
        for milestone in await self._milestone_repo.list_for_deal(deal.id):
            if milestone.status in SETTLED_MILESTONE_STATUSES:
                continue
            await settlement.release_to_payee(
                deal,
                milestone.amount,
                context,
                milestone_id=milestone.id,
                idempotency_key=f"release:{deal.id}:{milestone.id}",
            )
            milestone.status = MilestoneStatus.RELEASED.value
            milestone.released_at = now
            await self._audit.log_context_event(
                deal.id,
                context,
                EventType.MILESTONE_RELEASED,
                {"milestone_id": str(milestone.id), "index": milestone.index},
            )
        await self._session.flush()

    async def _close_milestone_deal(
        self, deal: Deal, context: TransitionContext, now: datetime
    ) -> None:
        """After a milestone settles outside the release engine, leave RESOLVED."""
        milestones = await self._milestone_repo.list_for_deal(deal.id)
        if next_unreleased_milestone(milestones) is not None:
            await self._transitions.transition(deal, DealStatus.FUNDED, context, now)
        elif any(m.status == MilestoneStatus.RELEASED for m in milestones):
            await self._transitions.transition(deal, DealStatus.RELEASED, context, now)
        else:
            await self._transitions.transition(deal, DealStatus.REFUNDED, context, now)

    async def _mark_unsettled_milestones_refunded(self, deal: Deal) -> None:
        if not deal.allows_partial_release:
            return
        for milestone in await self._milestone_repo.list_for_deal(deal.id):
            if milestone.status not in SETTLED_MILESTONE_STATUSES:
                milestone.status = MilestoneStatus.REFUNDED.value
        await self._session.flush()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_dispute_or_raise(self, dispute_id: uuid.UUID) -> Dispute:
        dispute = await self._dispute_repo.get_by_id(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    async def _get_milestone_or_raise(self, deal: Deal, milestone_id: uuid.UUID) -> Milestone:
        milestone = await self._milestone_repo.get_by_id(milestone_id)
        if milestone is None or milestone.deal_id != deal.id:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone
