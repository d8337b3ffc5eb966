"""Tests for the append-only ledger: idempotency, custody checks, currency."""

from __future__ import annotations

from decimal import Decimal

import pytest

from escrow_engine.domain.enums import LedgerEntryType
from escrow_engine.domain.exceptions import (
    CurrencyMismatchError,
    IdempotencyConflictError,
    InsufficientCustodyError,
)
from escrow_engine.services.ledger_service import LedgerService, summarize


class TestRecord:
    @pytest.mark.asyncio
    async def test_funding_creates_custody(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")

        balance = await harness.balance(deal_id)
        assert balance.funded == Decimal("100.00")
        assert balance.custody == Decimal("100.00")
        assert await harness.ledger_types(deal_id) == ["FUND"]

    @pytest.mark.asyncio
    async def test_replayed_key_returns_existing_entry(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")

        async with harness.scope() as session:
            ledger = LedgerService(session)
            first = await ledger.record(
                deal_id, LedgerEntryType.REFUND_TO_PAYER, Decimal("10.00"), "USD",
                idempotency_key="refund-once",
            )
            second = await ledger.record(
                deal_id, LedgerEntryType.REFUND_TO_PAYER, Decimal("10"), "USD",
                idempotency_key="refund-once",
            )
            assert second.id == first.id

        assert (await harness.balance(deal_id)).refunded == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_reused_key_with_other_parameters_conflicts(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")
        async with harness.scope() as session:
            await LedgerService(session).record(
                deal_id, LedgerEntryType.REFUND_TO_PAYER, Decimal("10.00"), "USD",
                idempotency_key="refund-once",
            )

        with pytest.raises(IdempotencyConflictError):
            async with harness.scope() as session:
                await LedgerService(session).record(
                    deal_id, LedgerEntryType.REFUND_TO_PAYER, Decimal("20.00"), "USD",
                    idempotency_key="refund-once",
                )

    @pytest.mark.asyncio
    async def test_outflow_beyond_custody_rejected(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")

        with pytest.raises(InsufficientCustodyError) as exc_info:
            async with harness.scope() as session:
                await LedgerService(session).record(
                    deal_id, LedgerEntryType.RELEASE_TO_PAYEE, Decimal("100.01"), "USD"
                )

        assert exc_info.value.code == "INSUFFICIENT_CUSTODY"
        assert (await harness.balance(deal_id)).custody == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_currency_must_match_deal(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")

        with pytest.raises(CurrencyMismatchError):
            async with harness.scope() as session:
                await LedgerService(session).record(
                    deal_id, LedgerEntryType.REFUND_TO_PAYER, Decimal("5.00"), "EUR"
                )

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")

        with pytest.raises(ValueError, match="must be positive"):
            async with harness.scope() as session:
                await LedgerService(session).record(
                    deal_id, LedgerEntryType.REFUND_TO_PAYER, Decimal("0"), "USD"
                )


class _Entry:
    def __init__(self, entry_type: str, amount: str) -> None:
        self.type = entry_type
        self.amount = Decimal(amount)


class TestSummarize:
    def test_fee_is_not_an_outflow(self) -> None:
        balance = summarize(
            [
                _Entry("FUND", "100.00"),
                _Entry("RELEASE_TO_PAYEE", "40.00"),
                _Entry("FEE", "3.20"),
                _Entry("SPLIT_RELEASE", "10.00"),
                _Entry("REFUND_TO_PAYER", "50.00"),
            ],
            "USD",
        )
        assert balance.released == Decimal("50.00")
        assert balance.fees == Decimal("3.20")
        assert balance.custody == Decimal("0.00")
        assert balance.to_dict()["custody"] == "0.00"

    def test_clawbacks_do_not_touch_custody(self) -> None:
        balance = summarize(
            [
                _Entry("FUND", "100.00"),
                _Entry("RELEASE_TO_PAYEE", "100.00"),
                _Entry("CHARGEBACK", "60.00"),
                _Entry("POST_RELEASE_REFUND", "15.00"),
            ],
            "USD",
        )
        assert balance.released == Decimal("100.00")
        assert balance.clawed_back == Decimal("75.00")
        assert balance.custody == Decimal("0.00")
