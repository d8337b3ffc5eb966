"""Ledger — append-only record of fund movements per deal.

The custody balance is never stored: it is rebuilt from the entries every
time it is needed. An outflow (release, refund, split) that would take
custody below zero is refused with ``InsufficientCustodyError``; that can
only happen through a bug such as a double release, so it is also raised
as an operator alert.

Entries may carry an idempotency key. Recording the same key again with
the same parameters returns the existing entry instead of adding a second
one; reusing a key with different parameters is an error.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from escrow_engine.domain.enums import LedgerEntryStatus, LedgerEntryType
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    CurrencyMismatchError,
    DealNotFoundError,
    IdempotencyConflictError,
    InsufficientCustodyError,
)
from escrow_engine.domain.fees import to_money
from escrow_engine.domain.results import CustodyBalance
from escrow_engine.infrastructure.database.orm_models import LedgerTransaction
from escrow_engine.infrastructure.database.repositories import (
    DealRepository,
    LedgerRepository,
)
from escrow_engine.logging_config import alert, get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ZERO = Decimal("0")


def summarize(entries: Iterable[LedgerTransaction], currency: str) -> CustodyBalance:
    """Fold ledger entries into a balance."""
    funded = released = refunded = fees = clawed_back = ZERO
    for entry in entries:
        entry_type = LedgerEntryType(entry.type)
        if entry_type is LedgerEntryType.FUND:
            funded += entry.amount
        elif entry_type in (LedgerEntryType.RELEASE_TO_PAYEE, LedgerEntryType.SPLIT_RELEASE):
            released += entry.amount
        elif entry_type is LedgerEntryType.REFUND_TO_PAYER:
            refunded += entry.amount
        elif entry_type is LedgerEntryType.FEE:
            fees += entry.amount
        elif entry_type.is_clawback:
            clawed_back += entry.amount
    return CustodyBalance(
        funded=to_money(funded),
        released=to_money(released),
        refunded=to_money(refunded),
        fees=to_money(fees),
        currency=currency,
        clawed_back=to_money(clawed_back),
    )


class LedgerService:
    """Records fund movements and derives custody."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._ledger_repo = LedgerRepository(session)
        self._deal_repo = DealRepository(session)

    async def record(
        self,
        deal_id: uuid.UUID,
        entry_type: LedgerEntryType,
        amount: Decimal,
        currency: str,
        milestone_id: uuid.UUID | None = None,
        idempotency_key: str | None = None,
        metadata: dict | None = None,
    ) -> LedgerTransaction:
        """Append an entry, or return the existing one for a replayed key.

        Raises:
            ValueError: If ``amount`` is not positive.
            CurrencyMismatchError: If ``currency`` is not the deal's currency.
            IdempotencyConflictError: If the key exists with other parameters.
            InsufficientCustodyError: If an outflow exceeds current custody.
            ConcurrentModificationError: If another transaction inserted the
                same key first.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError(f"Ledger amount must be positive, got {amount}")

        if idempotency_key is not None:
            existing = await self._ledger_repo.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                if not self._same_parameters(
                    existing, deal_id, entry_type, amount, currency, milestone_id
                ):
                    raise IdempotencyConflictError(idempotency_key)
                logger.info(
                    "ledger.replayed",
                    deal_id=deal_id,
                    entry_id=existing.id,
                    idempotency_key=idempotency_key,
                )
                return existing

        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        if currency != deal.currency:
            raise CurrencyMismatchError(deal.currency, currency)

        if entry_type.is_outflow:
            balance = await self.balance(deal_id)
            if amount > balance.custody:
                alert(
                    logger,
                    "ledger.insufficient_custody",
                    deal_id=deal_id,
                    entry_type=str(entry_type),
                    requested=amount,
                    custody=balance.custody,
                )
                raise InsufficientCustodyError(
                    str(deal_id), format(amount, "f"), format(balance.custody, "f")
                )

        entry = LedgerTransaction(
            deal_id=deal_id,
            milestone_id=milestone_id,
            type=entry_type.value,
            amount=amount,
            currency=currency,
            status=LedgerEntryStatus.COMMITTED.value,
            idempotency_key=idempotency_key,
            metadata_json=metadata,
        )
        try:
            entry = await self._ledger_repo.add(entry)
        except IntegrityError as err:
            # Lost an insert race on the idempotency key.
            raise ConcurrentModificationError(
                str(deal_id), expected=f"unused key {idempotency_key}"
            ) from err

        logger.info(
            "ledger.recorded",
            deal_id=deal_id,
            milestone_id=milestone_id,
            entry_type=str(entry_type),
            amount=amount,
            currency=currency,
            entry_id=entry.id,
        )
        return entry

    async def balance(self, deal_id: uuid.UUID) -> CustodyBalance:
        """Recompute the deal's balance from its ledger entries."""
        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        entries = await self._ledger_repo.list_for_deal(deal_id)
        return summarize(entries, deal.currency)

    async def entries(self, deal_id: uuid.UUID) -> list[LedgerTransaction]:
        return await self._ledger_repo.list_for_deal(deal_id)

    async def find_by_key(self, idempotency_key: str) -> LedgerTransaction | None:
        return await self._ledger_repo.get_by_idempotency_key(idempotency_key)

    @staticmethod
    def _same_parameters(
        entry: LedgerTransaction,
        deal_id: uuid.UUID,
        entry_type: LedgerEntryType,
        amount: Decimal,
        currency: str,
        milestone_id: uuid.UUID | None,
    ) -> bool:
        return (
            entry.deal_id == deal_id
            and entry.type == entry_type.value
            and to_money(entry.amount) == amount
            and entry.currency == currency
            and entry.milestone_id == milestone_id
        )
