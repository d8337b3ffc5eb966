"""Payout Service — off-platform transfers for released funds.

A release creates a PENDING payout in the same transaction as its ledger
entry. The rail is called only after that transaction commits, in a
transaction of its own. A rail error marks the payout FAILED with the
error code and whether a retry can help. The release itself is never
undone because a payout failed.

Payout statuses: PENDING -> PROCESSING -> COMPLETED | FAILED.
A retryable FAILED payout goes back through issue() on the next retry sweep.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.clock import utc_now
from escrow_engine.domain.enums import EventType, PayoutStatus
from escrow_engine.domain.exceptions import (
    PaymentRailError,
    PayoutFailedError,
    PayoutNotFoundError,
    PayoutStateError,
)
from escrow_engine.domain.results import SweepItemResult, SweepSummary
from escrow_engine.infrastructure.database.engine import after_commit, session_scope
from escrow_engine.infrastructure.database.orm_models import Payout
from escrow_engine.infrastructure.database.repositories import (
    PayeeAccountRepository,
    PayoutRepository,
)
from escrow_engine.logging_config import get_logger
from escrow_engine.services.audit import AuditLog
from escrow_engine.services.payment_service import PaymentRail, PaymentService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.fees import FeeBreakdown
    from escrow_engine.infrastructure.database.orm_models import (
        Deal,
        LedgerTransaction,
    )

logger = get_logger(__name__)

_CALLBACK_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.FAILED: {PayoutStatus.PROCESSING, PayoutStatus.COMPLETED},
    PayoutStatus.COMPLETED: set(),
}


class PayoutService:
    """Creates, issues and tracks payouts."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        rail: PaymentRail | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._rail = rail
        self._payments = PaymentService(rail, self._settings.payment_rail_timeout_seconds)
        self._payout_repo = PayoutRepository(session)
        self._account_repo = PayeeAccountRepository(session)
        self._audit = AuditLog(session)

    async def create_for_release(
        self,
        deal: Deal,
        entry: LedgerTransaction,
        breakdown: FeeBreakdown,
    ) -> Payout:
        """Create the PENDING payout for a release ledger entry."""
        account = await self._account_repo.get(deal.payee_id, deal.currency)
        payout = Payout(
            deal_id=deal.id,
            milestone_id=entry.milestone_id,
            ledger_transaction_id=entry.id,
            payee_id=deal.payee_id,
            destination_account_id=account.destination_account_id if account else None,
            amount=breakdown.net,
            gross_amount=breakdown.gross,
            fee=breakdown.fee,
            currency=deal.currency,
            status=PayoutStatus.PENDING.value,
        )
        payout = await self._payout_repo.create(payout)
        await self._audit.log_event(
            deal_id=deal.id,
            actor_type="SYSTEM",
            actor_id="payouts",
            event_type=EventType.PAYOUT_CREATED,
            payload={"payout_id": str(payout.id), **breakdown.to_dict()},
        )
        logger.info("payout.created", payout_id=payout.id, deal_id=deal.id, amount=payout.amount)
        return payout

    def issue_after_commit(self, payout: Payout) -> None:
        """Issue ``payout`` once the current unit of work commits."""
        payout_id, settings, rail = payout.id, self._settings, self._rail

        async def _issue(session_factory: async_sessionmaker[AsyncSession]) -> None:
            await issue_in_own_transaction(session_factory, payout_id, settings, rail)

        after_commit(self._session, _issue)

    async def issue(self, payout: Payout) -> Payout:
        """Send a payout to the rail. Rail errors are recorded, not raised."""
        if payout.status == PayoutStatus.FAILED and not payout.retryable:
            return payout
        if payout.status not in (PayoutStatus.PENDING, PayoutStatus.FAILED):
            return payout

        if payout.destination_account_id is None:
            account = await self._account_repo.get(payout.payee_id, payout.currency)
            if account is not None:
                payout.destination_account_id = account.destination_account_id

        payout.attempts += 1
        try:
            payout_ref = await self._payments.create_payout(
                amount=payout.amount,
                gross_amount=payout.gross_amount,
                fee=payout.fee,
                currency=payout.currency,
                destination_account_id=payout.destination_account_id,
                deal_id=str(payout.deal_id),
            )
        except PaymentRailError as exc:
            payout.status = PayoutStatus.FAILED.value
            payout.failure_code = exc.code
            payout.failure_message = exc.message
            payout.retryable = exc.retryable
            await self._session.flush()
            await self._audit.log_event(
                deal_id=payout.deal_id,
                actor_type="SYSTEM",
                actor_id="payouts",
                event_type=EventType.PAYOUT_FAILED,
                payload={
                    "payout_id": str(payout.id),
                    "failure_code": exc.code,
                    "retryable": exc.retryable,
                    "attempts": payout.attempts,
                },
            )
            logger.error(
                "payout.failed",
                payout_id=payout.id,
                deal_id=payout.deal_id,
                code=exc.code,
                retryable=exc.retryable,
                attempts=payout.attempts,
            )
            return payout

        payout.status = PayoutStatus.PROCESSING.value
        payout.payout_ref = payout_ref
        payout.failure_code = None
        payout.failure_message = None
        payout.retryable = False
        await self._session.flush()
        logger.info("payout.issued", payout_id=payout.id, payout_ref=payout_ref)
        return payout

    async def handle_payout_callback(
        self,
        payout_ref: str,
        status: PayoutStatus,
        failure_code: str | None = None,
        failure_message: str | None = None,
        retryable: bool = False,
        now: datetime | None = None,
    ) -> Payout:
        """Apply a status report from the rail to the payout it refers to."""
        now = now or utc_now()
        payout = await self._payout_repo.get_by_ref(payout_ref)
        if payout is None:
            raise PayoutNotFoundError(payout_ref)
        payout = await self._payout_repo.get_by_id_for_update(payout.id)

        current = PayoutStatus(payout.status)
        if current == status:
            return payout
        if status not in _CALLBACK_TRANSITIONS[current]:
            raise PayoutStateError(str(payout.id), current.value, status.value)

        payout.status = status.value
        if status is PayoutStatus.COMPLETED:
            payout.completed_at = now
            payout.failure_code = None
            payout.failure_message = None
            payout.retryable = False
        elif status is PayoutStatus.FAILED:
            payout.failure_code = failure_code or "RAIL_REPORTED_FAILURE"
            payout.failure_message = failure_message
            payout.retryable = retryable
        await self._session.flush()

        await self._audit.log_event(
            deal_id=payout.deal_id,
            actor_type="SYSTEM",
            actor_id="payment_rail",
            event_type=EventType.PAYOUT_UPDATED,
            payload={
                "payout_id": str(payout.id),
                "from": current.value,
                "to": status.value,
                "failure_code": payout.failure_code,
            },
        )
        logger.info("payout.callback_applied", payout_id=payout.id, old=current, new=status)
        return payout

    async def get_payout(self, payout_id: uuid.UUID) -> Payout:
        payout = await self._payout_repo.get_by_id(payout_id)
        if payout is None:
            raise PayoutNotFoundError(str(payout_id))
        return payout

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[Payout]:
        return await self._payout_repo.list_for_deal(deal_id)


async def issue_in_own_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    payout_id: uuid.UUID,
    settings: Settings | None = None,
    rail: PaymentRail | None = None,
) -> Payout | None:
    """Lock one payout and issue it in a committed transaction of its own."""
    async with session_scope(session_factory) as session:
        payout = await PayoutRepository(session).get_by_id_for_update(payout_id)
        if payout is None:
            return None
        return await PayoutService(session, settings, rail).issue(payout)


async def retry_failed_payouts(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    rail: PaymentRail | None = None,
    limit: int | None = None,
) -> SweepSummary:
    """Re-issue PENDING and retryable FAILED payouts, one transaction each."""
    settings = settings or get_settings()
    summary = SweepSummary()

    async with session_factory() as session:
        candidates = await PayoutRepository(session).list_issuable(limit or settings.sweep_batch_size)
        candidate_ids = [(p.id, p.deal_id) for p in candidates]

    for payout_id, deal_id in candidate_ids:
        payout = await issue_in_own_transaction(session_factory, payout_id, settings, rail)
        if payout is None:
            continue
        outcome = "issued" if payout.status == PayoutStatus.PROCESSING else "error"
        summary.record(
            SweepItemResult(
                deal_id=str(deal_id),
                milestone_id=str(payout.milestone_id) if payout.milestone_id else None,
                outcome=outcome,
                detail=payout.failure_code,
            )
        )

    logger.info(
        "payout.retry_sweep_complete",
        processed=summary.processed,
        issued=summary.approved,
        failed=summary.failed,
    )
    return summary


async def reissue_payout(
    session_factory: async_sessionmaker[AsyncSession],
    payout_id: uuid.UUID,
    settings: Settings | None = None,
    rail: PaymentRail | None = None,
) -> Payout:
    """Operator-triggered retry of one payout.

    The attempt is committed in its own transaction before a failure is
    raised, so the failure code and attempt count survive the error.

    Raises:
        PayoutNotFoundError: If the payout does not exist.
        PayoutFailedError: If the rail rejected the payout again.
    """
    payout = await issue_in_own_transaction(session_factory, payout_id, settings, rail)
    if payout is None:
        raise PayoutNotFoundError(str(payout_id))
    if payout.status == PayoutStatus.FAILED:
        raise PayoutFailedError(
            str(payout.id),
            payout.failure_message or payout.failure_code or "rail error",
            retryable=payout.retryable,
        )
    return payout
