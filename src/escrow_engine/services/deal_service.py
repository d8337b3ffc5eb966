"""Deal use cases: setup, funding, shipping, proof, review and cancellation.

Each method is one unit of work inside the caller's transaction. Status
changes go through TransitionService, which owns the role table, the
conditional status write and the side effects of each edge.
"""

from __future__ import annotations

import dataclasses
from decimal import Decimal
from typing import TYPE_CHECKING

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.clock import utc_now
from escrow_engine.domain.enums import (
    DealCategory,
    DealStatus,
    EventType,
    MilestoneStatus,
)
from escrow_engine.domain.exceptions import (
    DealNotFoundError,
    MilestoneStateError,
)
from escrow_engine.domain.fees import to_money
from escrow_engine.domain.milestones import validate_milestone_schedule
from escrow_engine.infrastructure.database.orm_models import Deal, Milestone
from escrow_engine.infrastructure.database.repositories import (
    DealRepository,
    EventRepository,
    MilestoneRepository,
    PayeeAccountRepository,
)
from escrow_engine.logging_config import get_logger
from escrow_engine.services.audit import AuditLog
from escrow_engine.services.transition_service import TransitionService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.milestones import MilestonePlan
    from escrow_engine.domain.results import CustodyBalance, TransitionContext
    from escrow_engine.infrastructure.database.orm_models import (
        DealEvent,
        LedgerTransaction,
        PayeeAccount,
    )
    from escrow_engine.services.payment_service import PaymentRail

logger = get_logger(__name__)


class DealService:
    """Creates deals and drives them through the non-release parts of the lifecycle."""

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
        self._event_repo = EventRepository(session)
        self._account_repo = PayeeAccountRepository(session)
        self._transitions = TransitionService(session, self._settings, rail, session_factory)
        self._audit = AuditLog(session)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def create_deal(
        self,
        payer_id: str,
        payee_id: str,
        total_amount: Decimal,
        currency: str,
        category: DealCategory,
        context: TransitionContext,
        title: str | None = None,
        delivery_date: datetime | None = None,
        milestones: Sequence[MilestonePlan] | None = None,
    ) -> Deal:
        """Create a deal in AWAITING_PAYMENT, with its milestone schedule if any.

        Raises:
            MilestoneScheduleError: If the schedule does not add up to the
                total, is out of order, or runs past the delivery date.
            ValueError: If the parties, amount or currency are invalid.
        """
        if payer_id == payee_id:
            raise ValueError("Payer and payee must be different users")
        total_amount = to_money(total_amount)
        if total_amount <= 0:
            raise ValueError("Deal amount must be positive")
        currency = currency.upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValueError(f"Invalid currency code: {currency}")

        plans = list(milestones or [])
        if plans:
            plans = [dataclasses.replace(plan, amount=to_money(plan.amount)) for plan in plans]
            validate_milestone_schedule(total_amount, plans, delivery_date)

        deal = Deal(
            payer_id=payer_id,
            payee_id=payee_id,
            title=title,
            total_amount=total_amount,
            currency=currency,
            category=category.value,
            allows_partial_release=bool(plans),
            delivery_date=delivery_date,
            status=DealStatus.AWAITING_PAYMENT.value,
            version=0,
            provisional_credit=Decimal("0"),
        )
        deal = await self._deal_repo.create(deal)

        if plans:
            await self._milestone_repo.create_many(
                Milestone(
                    deal_id=deal.id,
                    index=index,
                    title=plan.title,
                    amount=plan.amount,
                    due_date=plan.due_date,
                    review_window_days=(
                        plan.review_window_days
                        if plan.review_window_days is not None
                        else self._settings.default_review_window_days
                    ),
                    revision_limit=(
                        plan.revision_limit
                        if plan.revision_limit is not None
                        else self._settings.default_revision_limit
                    ),
                    auto_approve=plan.auto_approve,
                    status=MilestoneStatus.PENDING.value,
                )
                for index, plan in enumerate(plans)
            )
        await self._session.refresh(deal, attribute_names=["milestones"])

        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.DEAL_CREATED,
            {
                "total_amount": format(total_amount, "f"),
                "currency": currency,
                "category": category.value,
                "milestones": len(plans),
            },
            new_status=DealStatus.AWAITING_PAYMENT.value,
        )
        logger.info(
            "deal.created",
            deal_id=deal.id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=total_amount,
            currency=currency,
            milestones=len(plans),
        )
        return deal

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def fund_deal(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        payment_ref: str | None = None,
        now: datetime | None = None,
    ) -> Deal:
        """Record the payer's payment.

        Physical goods go to AWAITING_SHIPMENT with a provisional credit to
        the payee; everything else goes to FUNDED.
        """
        deal = await self._transitions.lock_deal(deal_id)
        ships = (
            deal.category == DealCategory.PHYSICAL_GOOD and not deal.allows_partial_release
        )
        target = DealStatus.AWAITING_SHIPMENT if ships else DealStatus.FUNDED
        await self._transitions.ensure_allowed(deal, target, context)
        if payment_ref:
            deal.payment_ref = payment_ref
        await self._transitions.transition(deal, target, context, now)
        return deal

    async def mark_shipped(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        tracking_number: str | None = None,
        now: datetime | None = None,
    ) -> Deal:
        deal = await self._transitions.lock_deal(deal_id)
        await self._transitions.transition(
            deal, DealStatus.IN_TRANSIT, context, now, tracking_number=tracking_number
        )
        return deal

    async def submit_proof(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        now: datetime | None = None,
    ) -> Deal:
        """Payee's proof of delivery for a deal without milestones."""
        deal = await self._transitions.lock_deal(deal_id)
        if deal.allows_partial_release:
            raise MilestoneStateError("Milestone deals are delivered milestone by milestone")
        await self._transitions.transition(deal, DealStatus.PROOF_SUBMITTED, context, now)
        return deal

    async def start_review(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        now: datetime | None = None,
    ) -> Deal:
        return await self._move(deal_id, DealStatus.UNDER_REVIEW, context, now)

    async def confirm_delivery(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        now: datetime | None = None,
    ) -> Deal:
        """Carrier or payer confirms arrival; the release grace period starts."""
        return await self._move(deal_id, DealStatus.DELIVERED_PENDING_RELEASE, context, now)

    async def cancel_deal(
        self,
        deal_id: uuid.UUID,
        context: TransitionContext,
        now: datetime | None = None,
    ) -> Deal:
        """Cancel before delivery starts.

        From AWAITING_SHIPMENT the provisional payee credit is rolled back and
        the funded amount refunded in the same transaction as the status write.
        """
        return await self._move(deal_id, DealStatus.CANCELED, context, now)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_deal(self, deal_id: uuid.UUID) -> Deal:
        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        return deal

    async def get_balance(self, deal_id: uuid.UUID) -> CustodyBalance:
        return await self._transitions.settlement.ledger.balance(deal_id)

    async def get_ledger(self, deal_id: uuid.UUID) -> list[LedgerTransaction]:
        await self.get_deal(deal_id)
        return await self._transitions.settlement.ledger.entries(deal_id)

    async def get_events(self, deal_id: uuid.UUID) -> list[DealEvent]:
        await self.get_deal(deal_id)
        return await self._event_repo.list_for_deal(deal_id)

    # ------------------------------------------------------------------
    # Payee accounts
    # ------------------------------------------------------------------

    async def connect_payee_account(
        self,
        user_id: str,
        destination_account_id: str,
        currency: str,
    ) -> PayeeAccount:
        """Attach the payout destination used for the payee's future payouts."""
        account = await self._account_repo.get_or_create_for_update(user_id, currency.upper())
        account.destination_account_id = destination_account_id
        await self._session.flush()
        logger.info("payee.account_connected", user_id=user_id, currency=account.currency)
        return account

    async def get_payee_account(self, user_id: str, currency: str) -> PayeeAccount | None:
        return await self._account_repo.get(user_id, currency.upper())

    async def list_payee_accounts(self, user_id: str) -> list[PayeeAccount]:
        return await self._account_repo.list_for_user(user_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _move(
        self,
        deal_id: uuid.UUID,
        target: DealStatus,
        context: TransitionContext,
        now: datetime | None,
    ) -> Deal:
        now = now or utc_now()
        outcome = await self._transitions.apply_transition(deal_id, target, context, now)
        return outcome.deal

