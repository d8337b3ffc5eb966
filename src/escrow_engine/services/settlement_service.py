"""Settlement: the money-moving steps shared by releases, refunds, cancels
and post-release clawbacks.

Every method assumes the caller already holds the deal's row lock and has
re-checked eligibility; they only record what the caller decided.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.enums import EventType, LedgerEntryType
from escrow_engine.domain.exceptions import (
    ClawbackNotAllowedError,
    InsufficientCustodyError,
    PaymentRailError,
)
from escrow_engine.domain.fees import FeeBreakdown, compute_fee
from escrow_engine.domain.results import ClawbackResult
from escrow_engine.infrastructure.database.engine import after_commit, session_scope
from escrow_engine.infrastructure.database.repositories import (
    PayeeAccountRepository,
    PayoutRepository,
)
from escrow_engine.logging_config import alert, get_logger
from escrow_engine.services.audit import AuditLog
from escrow_engine.services.ledger_service import LedgerService
from escrow_engine.services.payment_service import PaymentRail, PaymentService
from escrow_engine.services.payout_service import PayoutService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.results import TransitionContext
    from escrow_engine.infrastructure.database.orm_models import (
        Deal,
        LedgerTransaction,
        Payout,
    )

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class SettlementResult:
    entry: LedgerTransaction
    breakdown: FeeBreakdown
    payout: Payout | None
    replayed: bool = False


class SettlementService:
    """Ledger entries plus the wallet and payout bookkeeping that goes with them."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        rail: PaymentRail | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._ledger = LedgerService(session)
        self._payouts = PayoutService(session, self._settings, rail)
        self._payments = PaymentService(rail, self._settings.payment_rail_timeout_seconds)
        self._payout_repo = PayoutRepository(session)
        self._account_repo = PayeeAccountRepository(session)
        self._audit = AuditLog(session)

    @property
    def ledger(self) -> LedgerService:
        return self._ledger

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def fund(self, deal: Deal, context: TransitionContext) -> LedgerTransaction:
        return await self._ledger.record(
            deal_id=deal.id,
            entry_type=LedgerEntryType.FUND,
            amount=deal.total_amount,
            currency=deal.currency,
            idempotency_key=f"fund:{deal.id}",
            metadata={"payment_ref": deal.payment_ref, "actor_id": context.actor_id},
        )

    async def apply_provisional_credit(self, deal: Deal, context: TransitionContext) -> None:
        """Credit the payee's pending balance with the funded amount."""
        account = await self._account_repo.get_or_create_for_update(deal.payee_id, deal.currency)
        account.pending_balance += deal.total_amount
        deal.provisional_credit = deal.total_amount
        await self._session.flush()
        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.PROVISIONAL_CREDIT_APPLIED,
            {"payee_id": deal.payee_id, "amount": format(deal.total_amount, "f")},
        )

    async def clear_provisional_credit(
        self,
        deal: Deal,
        context: TransitionContext,
        rolled_back: bool,
    ) -> Decimal:
        """Remove the deal's provisional credit from the payee's pending balance.

        ``rolled_back`` marks a cancel or refund (the credit is taken back)
        as opposed to a release (the credit turns into available funds).
        """
        credit = deal.provisional_credit or ZERO
        if credit <= 0:
            return ZERO

        account = await self._account_repo.get_or_create_for_update(deal.payee_id, deal.currency)
        if account.pending_balance < credit:
            alert(
                logger,
                "ledger.pending_balance_underflow",
                deal_id=deal.id,
                payee_id=deal.payee_id,
                pending=account.pending_balance,
                credit=credit,
            )
            raise InsufficientCustodyError(
                str(deal.id), format(credit, "f"), format(account.pending_balance, "f")
            )
        account.pending_balance -= credit
        deal.provisional_credit = ZERO
        await self._session.flush()

        if rolled_back:
            await self._audit.log_context_event(
                deal.id,
                context,
                EventType.PROVISIONAL_CREDIT_ROLLED_BACK,
                {"payee_id": deal.payee_id, "amount": format(credit, "f")},
            )
            logger.info(
                "settlement.provisional_credit_rolled_back",
                deal_id=deal.id,
                payee_id=deal.payee_id,
                amount=credit,
            )
        return credit

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_to_payee(
        self,
        deal: Deal,
        amount: Decimal,
        context: TransitionContext,
        milestone_id: uuid.UUID | None = None,
        idempotency_key: str | None = None,
        entry_type: LedgerEntryType = LedgerEntryType.RELEASE_TO_PAYEE,
    ) -> SettlementResult:
        """Move ``amount`` out of custody to the payee, net of the platform fee.

        Records the release entry and its FEE entry, credits the payee's
        available balance with the net, and creates the PENDING payout. When
        configured, the payout is issued once the caller's transaction commits.
        """
        breakdown = compute_fee(amount, self._settings.platform_fee_rate)

        if idempotency_key is not None:
            existing = await self._ledger.find_by_key(idempotency_key)
            if existing is not None:
                entry = await self._ledger.record(
                    deal_id=deal.id,
                    entry_type=entry_type,
                    amount=amount,
                    currency=deal.currency,
                    milestone_id=milestone_id,
                    idempotency_key=idempotency_key,
                )
                payout = await self._payout_repo.get_by_ledger_transaction(entry.id)
                return SettlementResult(entry, breakdown, payout, replayed=True)

        entry = await self._ledger.record(
            deal_id=deal.id,
            entry_type=entry_type,
            amount=breakdown.gross,
            currency=deal.currency,
            milestone_id=milestone_id,
            idempotency_key=idempotency_key,
            metadata={"fee": format(breakdown.fee, "f"), "net": format(breakdown.net, "f")},
        )
        if breakdown.fee > 0:
            await self._ledger.record(
                deal_id=deal.id,
                entry_type=LedgerEntryType.FEE,
                amount=breakdown.fee,
                currency=deal.currency,
                milestone_id=milestone_id,
                idempotency_key=f"{idempotency_key}:fee" if idempotency_key else None,
                metadata={"release_entry_id": str(entry.id)},
            )

        account = await self._account_repo.get_or_create_for_update(deal.payee_id, deal.currency)
        account.available_balance += breakdown.net
        await self._session.flush()

        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.FUNDS_RELEASED,
            {
                "entry_id": str(entry.id),
                "milestone_id": str(milestone_id) if milestone_id else None,
                "entry_type": entry_type.value,
                **breakdown.to_dict(),
            },
        )

        payout = await self._payouts.create_for_release(deal, entry, breakdown)
        if self._settings.issue_payouts_after_commit:
            self._payouts.issue_after_commit(payout)

        logger.info(
            "settlement.released",
            deal_id=deal.id,
            milestone_id=milestone_id,
            gross=breakdown.gross,
            fee=breakdown.fee,
            net=breakdown.net,
            payout_status=payout.status,
        )
        return SettlementResult(entry, breakdown, payout)

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund_to_payer(
        self,
        deal: Deal,
        amount: Decimal,
        context: TransitionContext,
        milestone_id: uuid.UUID | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerTransaction:
        """Return ``amount`` from custody to the payer.

        The ledger entry is authoritative. The rail refund is attempted once,
        after the caller's transaction commits: a rail error is logged and
        audited for operators but never undoes the entry.
        """
        entry = await self._ledger.record(
            deal_id=deal.id,
            entry_type=LedgerEntryType.REFUND_TO_PAYER,
            amount=amount,
            currency=deal.currency,
            milestone_id=milestone_id,
            idempotency_key=idempotency_key,
        )
        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.FUNDS_REFUNDED,
            {
                "entry_id": str(entry.id),
                "milestone_id": str(milestone_id) if milestone_id else None,
                "amount": format(entry.amount, "f"),
            },
        )

        if deal.payment_ref:
            self._refund_after_commit(deal, entry, context)

        logger.info("settlement.refunded", deal_id=deal.id, amount=entry.amount)
        return entry

    # ------------------------------------------------------------------
    # Clawback
    # ------------------------------------------------------------------

    async def claw_back(
        self,
        deal: Deal,
        amount: Decimal,
        entry_type: LedgerEntryType,
        context: TransitionContext,
        idempotency_key: str,
        event_type: EventType,
        metadata: dict | None = None,
        refund_payer: bool = False,
    ) -> ClawbackResult:
        """Take ``amount`` of released money back from the payee.

        The release is not reversed. A clawback entry is appended and the
        payee's available balance is debited by the full amount, even if
        that leaves it negative. With ``refund_payer`` the money is also
        returned to the payer on the rail once the transaction commits.

        Raises:
            ClawbackNotAllowedError: If nothing was released or ``amount``
                exceeds what is left to claw back.
        """
        account = await self._account_repo.get_or_create_for_update(deal.payee_id, deal.currency)

        existing = await self._ledger.find_by_key(idempotency_key)
        if existing is not None:
            entry = await self._ledger.record(
                deal_id=deal.id,
                entry_type=entry_type,
                amount=amount,
                currency=deal.currency,
                idempotency_key=idempotency_key,
            )
            return ClawbackResult(
                deal_id=deal.id,
                ledger_entry_id=entry.id,
                entry_type=entry.type,
                amount=entry.amount,
                payee_id=deal.payee_id,
                payee_available_balance=account.available_balance,
                replayed=True,
            )

        balance = await self._ledger.balance(deal.id)
        reclaimable = balance.released - balance.clawed_back
        if reclaimable <= 0:
            raise ClawbackNotAllowedError(str(deal.id), "no released funds")
        if amount > reclaimable:
            raise ClawbackNotAllowedError(
                str(deal.id), f"{format(amount, 'f')} exceeds {format(reclaimable, 'f')} released"
            )

        entry = await self._ledger.record(
            deal_id=deal.id,
            entry_type=entry_type,
            amount=amount,
            currency=deal.currency,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        account.available_balance -= entry.amount
        await self._session.flush()

        if account.available_balance < 0:
            alert(
                logger,
                "payee.balance_negative",
                deal_id=deal.id,
                payee_id=deal.payee_id,
                currency=deal.currency,
                available=account.available_balance,
            )

        await self._audit.log_context_event(
            deal.id,
            context,
            event_type,
            {
                "entry_id": str(entry.id),
                "amount": format(entry.amount, "f"),
                "payee_available_balance": format(account.available_balance, "f"),
                **(metadata or {}),
            },
        )

        if refund_payer and deal.payment_ref:
            self._refund_after_commit(deal, entry, context)

        logger.info(
            "settlement.clawed_back",
            deal_id=deal.id,
            entry_type=str(entry_type),
            amount=entry.amount,
            payee_available=account.available_balance,
        )
        return ClawbackResult(
            deal_id=deal.id,
            ledger_entry_id=entry.id,
            entry_type=entry.type,
            amount=entry.amount,
            payee_id=deal.payee_id,
            payee_available_balance=account.available_balance,
        )

    def _refund_after_commit(
        self, deal: Deal, entry: LedgerTransaction, context: TransitionContext
    ) -> None:
        deal_id, entry_id, payment_ref = deal.id, entry.id, deal.payment_ref
        amount, payments = entry.amount, self._payments

        async def _refund(session_factory: async_sessionmaker[AsyncSession]) -> None:
            await refund_on_rail(
                session_factory, payments, deal_id, entry_id, payment_ref, amount, context
            )

        after_commit(self._session, _refund)

    async def custody(self, deal: Deal) -> Decimal:
        return (await self._ledger.balance(deal.id)).custody


async def refund_on_rail(
    session_factory: async_sessionmaker[AsyncSession],
    payments: PaymentService,
    deal_id: uuid.UUID,
    entry_id: uuid.UUID,
    payment_ref: str,
    amount: Decimal,
    context: TransitionContext,
) -> str | None:
    """Refund a committed REFUND_TO_PAYER entry on the rail.

    A rail error is audited in a transaction of its own and returns None.
    """
    try:
        refund_ref = await payments.refund_payment(payment_ref, amount)
    except PaymentRailError as exc:
        async with session_scope(session_factory) as session:
            await AuditLog(session).log_context_event(
                deal_id,
                context,
                EventType.REFUND_RAIL_FAILED,
                {"entry_id": str(entry_id), "code": exc.code, "retryable": exc.retryable},
            )
        logger.error(
            "settlement.refund_rail_failed",
            deal_id=deal_id,
            entry_id=entry_id,
            code=exc.code,
        )
        return None
    logger.info("settlement.refund_issued", deal_id=deal_id, refund_ref=refund_ref)
    return refund_ref
