"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import and_, or_, select, update

from escrow_engine.domain.enums import (
    ACTIVE_DISPUTE_STATUSES,
    DealStatus,
    MilestoneStatus,
    PayoutStatus,
)
from escrow_engine.infrastructure.database.orm_models import (
    Deal,
    DealEvent,
    Dispute,
    LedgerTransaction,
    Milestone,
    MilestoneDelivery,
    MilestoneRevision,
    PayeeAccount,
    Payout,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.enums import EventType

_ACTIVE_DISPUTE_VALUES = [status.value for status in ACTIVE_DISPUTE_STATUSES]


class DealRepository:
    """Data access for deals."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, deal: Deal) -> Deal:
        self._session.add(deal)
        await self._session.flush()
        return deal

    async def get_by_id(self, deal_id: uuid.UUID) -> Deal | None:
        result = await self._session.execute(select(Deal).where(Deal.id == deal_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, deal_id: uuid.UUID) -> Deal | None:
        """Fetch a deal under an exclusive row lock, refreshing any cached copy.

        The lock is held until the surrounding transaction ends. Every
        fund-moving operation takes it before re-checking eligibility.
        """
        result = await self._session.execute(
            select(Deal)
            .where(Deal.id == deal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def compare_and_set_status(
        self,
        deal: Deal,
        expected_status: DealStatus,
        new_status: DealStatus,
        **values: object,
    ) -> bool:
        """Write a new status only if the row still holds what we read.

        Returns False when another writer changed the status or version
        since ``deal`` was loaded. On success the instance is refreshed.
        """
        await self._session.flush()
        now = datetime.now(UTC)
        result = await self._session.execute(
            update(Deal)
            .where(
                Deal.id == deal.id,
                Deal.status == expected_status.value,
                Deal.version == deal.version,
            )
            .values(
                status=new_status.value,
                version=Deal.version + 1,
                updated_at=now,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(deal)
        return True

    async def list_auto_release_candidates(self, now: datetime, limit: int) -> list[Deal]:
        """Non-milestone deals whose deal-level grace deadline has passed."""
        result = await self._session.execute(
            select(Deal)
            .where(
                Deal.allows_partial_release.is_(False),
                Deal.auto_release_at.is_not(None),
                Deal.auto_release_at <= now,
                Deal.status.in_(
                    [
                        DealStatus.PROOF_SUBMITTED.value,
                        DealStatus.UNDER_REVIEW.value,
                        DealStatus.DELIVERED_PENDING_RELEASE.value,
                    ]
                ),
            )
            .order_by(Deal.auto_release_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())


class MilestoneRepository:
    """Data access for milestones and their delivery/revision history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_many(self, milestones: Iterable[Milestone]) -> list[Milestone]:
        milestones = list(milestones)
        self._session.add_all(milestones)
        await self._session.flush()
        return milestones

    async def get_by_id(self, milestone_id: uuid.UUID) -> Milestone | None:
        result = await self._session.execute(
            select(Milestone)
            .where(Milestone.id == milestone_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[Milestone]:
        """All milestones of a deal in index order, re-read from the store."""
        result = await self._session.execute(
            select(Milestone)
            .where(Milestone.deal_id == deal_id)
            .order_by(Milestone.index.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_auto_approve_candidates(self, delivered_before: datetime, limit: int) -> list[Milestone]:
        """Delivered auto-approve milestones, oldest delivery first.

        Only a cheap pre-filter: each milestone's own review window is
        checked again by the scheduler under the deal lock.
        """
        result = await self._session.execute(
            select(Milestone)
            .join(Deal, Deal.id == Milestone.deal_id)
            .where(
                Milestone.status == MilestoneStatus.DELIVERED.value,
                Milestone.auto_approve.is_(True),
                Milestone.delivered_at.is_not(None),
                Milestone.delivered_at <= delivered_before,
                Deal.status.in_(
                    [DealStatus.PROOF_SUBMITTED.value, DealStatus.UNDER_REVIEW.value]
                ),
            )
            .order_by(Milestone.delivered_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def add_delivery(self, delivery: MilestoneDelivery) -> MilestoneDelivery:
        self._session.add(delivery)
        await self._session.flush()
        return delivery

    async def list_deliveries(self, milestone_id: uuid.UUID) -> list[MilestoneDelivery]:
        result = await self._session.execute(
            select(MilestoneDelivery)
            .where(MilestoneDelivery.milestone_id == milestone_id)
            .order_by(MilestoneDelivery.submitted_at.asc())
        )
        return list(result.scalars().all())

    async def add_revision(self, revision: MilestoneRevision) -> MilestoneRevision:
        self._session.add(revision)
        await self._session.flush()
        return revision

    async def list_revisions(self, milestone_id: uuid.UUID) -> list[MilestoneRevision]:
        result = await self._session.execute(
            select(MilestoneRevision)
            .where(MilestoneRevision.milestone_id == milestone_id)
            .order_by(MilestoneRevision.created_at.asc())
        )
        return list(result.scalars().all())


class DisputeRepository:
    """Data access for disputes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.id == dispute_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[Dispute]:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.deal_id == deal_id)
            .order_by(Dispute.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_active(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID | None = None,
    ) -> Dispute | None:
        """First active dispute that covers the given scope.

        With no milestone, any active dispute on the deal matches. With a
        milestone, only deal-wide disputes and disputes on that milestone do.
        """
        query = select(Dispute).where(
            Dispute.deal_id == deal_id,
            Dispute.status.in_(_ACTIVE_DISPUTE_VALUES),
        )
        if milestone_id is not None:
            query = query.where(
                or_(Dispute.milestone_id.is_(None), Dispute.milestone_id == milestone_id)
            )
        result = await self._session.execute(
            query.order_by(Dispute.created_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


class LedgerRepository:
    """Data access for the append-only ledger. Inserts only."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, entry: LedgerTransaction) -> LedgerTransaction:
        """Append an entry. This is the ONLY write operation allowed."""
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_by_idempotency_key(self, key: str) -> LedgerTransaction | None:
        result = await self._session.execute(
            select(LedgerTransaction).where(LedgerTransaction.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[LedgerTransaction]:
        result = await self._session.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.deal_id == deal_id)
            .order_by(LedgerTransaction.created_at.asc())
        )
        return list(result.scalars().all())


class PayoutRepository:
    """Data access for payouts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, payout: Payout) -> Payout:
        self._session.add(payout)
        await self._session.flush()
        return payout

    async def get_by_id(self, payout_id: uuid.UUID) -> Payout | None:
        result = await self._session.execute(select(Payout).where(Payout.id == payout_id))
        return result.scalar_one_or_none()

    async def get_by_id_for_update(self, payout_id: uuid.UUID) -> Payout | None:
        result = await self._session.execute(
            select(Payout)
            .where(Payout.id == payout_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_ref(self, payout_ref: str) -> Payout | None:
        result = await self._session.execute(
            select(Payout).where(Payout.payout_ref == payout_ref)
        )
        return result.scalar_one_or_none()

    async def get_by_ledger_transaction(self, ledger_transaction_id: uuid.UUID) -> Payout | None:
        result = await self._session.execute(
            select(Payout).where(Payout.ledger_transaction_id == ledger_transaction_id)
        )
        return result.scalar_one_or_none()

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[Payout]:
        result = await self._session.execute(
            select(Payout).where(Payout.deal_id == deal_id).order_by(Payout.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_issuable(self, limit: int) -> list[Payout]:
        """PENDING payouts and FAILED payouts whose failure is retryable."""
        result = await self._session.execute(
            select(Payout)
            .where(
                or_(
                    Payout.status == PayoutStatus.PENDING.value,
                    and_(
                        Payout.status == PayoutStatus.FAILED.value,
                        Payout.retryable.is_(True),
                    ),
                )
            )
            .order_by(Payout.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())


class PayeeAccountRepository:
    """Data access for payee wallets."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str, currency: str) -> PayeeAccount | None:
        result = await self._session.execute(
            select(PayeeAccount).where(
                PayeeAccount.user_id == user_id,
                PayeeAccount.currency == currency,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[PayeeAccount]:
        result = await self._session.execute(
            select(PayeeAccount)
            .where(PayeeAccount.user_id == user_id)
            .order_by(PayeeAccount.currency.asc())
        )
        return list(result.scalars().all())

    async def get_or_create_for_update(self, user_id: str, currency: str) -> PayeeAccount:
        """Fetch the payee's wallet in ``currency`` under a row lock, creating it if missing."""
        result = await self._session.execute(
            select(PayeeAccount)
            .where(PayeeAccount.user_id == user_id, PayeeAccount.currency == currency)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            account = PayeeAccount(
                user_id=user_id,
                currency=currency,
                pending_balance=Decimal("0"),
                available_balance=Decimal("0"),
            )
            self._session.add(account)
            await self._session.flush()
        return account


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        deal_id: uuid.UUID,
        event_type: EventType,
        actor_type: str,
        actor_id: str,
        old_status: str | None = None,
        new_status: str | None = None,
        payload: dict | None = None,
        request_meta: dict | None = None,
    ) -> DealEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = DealEvent(
            deal_id=deal_id,
            event_type=event_type.value,
            actor_type=actor_type,
            actor_id=actor_id,
            old_status=old_status,
            new_status=new_status,
            payload=payload,
            request_meta=request_meta,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[DealEvent]:
        """Fetch all events for a deal in chronological order."""
        result = await self._session.execute(
            select(DealEvent)
            .where(DealEvent.deal_id == deal_id)
            .order_by(DealEvent.created_at.asc())
        )
        return list(result.scalars().all())
