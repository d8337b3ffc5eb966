"""Tests for payout issuing, retries and rail status callbacks."""

from __future__ import annotations

import uuid

import pytest

from conftest import T0
from escrow_engine.domain.enums import PayoutStatus
from escrow_engine.domain.exceptions import (
    PayoutFailedError,
    PayoutNotFoundError,
    PayoutStateError,
    RailRejectedError,
    RailTemporaryFailureError,
)
from escrow_engine.domain.results import ReleaseContext
from escrow_engine.services.payout_service import reissue_payout, retry_failed_payouts


async def released_deal(harness):
    """Release a $100 service deal and return (deal_id, payout)."""
    deal_id = await harness.create_funded_deal()
    async with harness.scope() as session:
        await harness.deals(session).submit_proof(deal_id, harness.payee, now=T0)
    context = ReleaseContext(actor_id=harness.payer.actor_id, actor_role=harness.payer.actor_role)
    async with harness.scope() as session:
        await harness.releases(session).release(deal_id, None, context)
    (payout,) = await harness.deal_payouts(deal_id)
    return deal_id, payout


class TestRetry:
    @pytest.mark.asyncio
    async def test_temporary_failure_is_retried(self, harness) -> None:
        harness.rail.payout_error = RailTemporaryFailureError("rail timed out")
        deal_id, payout = await released_deal(harness)
        assert payout.status == PayoutStatus.FAILED
        assert payout.retryable
        assert payout.attempts == 1

        harness.rail.payout_error = None
        summary = await retry_failed_payouts(harness.session_factory, harness.settings, harness.rail)

        assert summary.processed == 1
        assert summary.approved == 1
        (payout,) = await harness.deal_payouts(deal_id)
        assert payout.status == PayoutStatus.PROCESSING
        assert payout.attempts == 2
        assert payout.payout_ref == "po_test_1"
        assert payout.failure_code is None

    @pytest.mark.asyncio
    async def test_permanent_failure_is_left_alone(self, harness) -> None:
        harness.rail.payout_error = RailRejectedError("destination closed")
        deal_id, payout = await released_deal(harness)
        assert payout.failure_code == "RAIL_REJECTED"
        assert not payout.retryable

        harness.rail.payout_error = None
        summary = await retry_failed_payouts(harness.session_factory, harness.settings, harness.rail)

        assert summary.processed == 0
        (payout,) = await harness.deal_payouts(deal_id)
        assert payout.status == PayoutStatus.FAILED
        assert harness.rail.payouts == []

    @pytest.mark.asyncio
    async def test_reissue_raises_and_keeps_the_attempt(self, harness) -> None:
        harness.rail.payout_error = RailTemporaryFailureError("rail timed out")
        deal_id, payout = await released_deal(harness)

        with pytest.raises(PayoutFailedError) as exc_info:
            await reissue_payout(harness.session_factory, payout.id, harness.settings, harness.rail)

        assert exc_info.value.retryable
        (payout,) = await harness.deal_payouts(deal_id)
        assert payout.attempts == 2
        assert payout.status == PayoutStatus.FAILED

    @pytest.mark.asyncio
    async def test_reissue_unknown_payout(self, harness) -> None:
        with pytest.raises(PayoutNotFoundError):
            await reissue_payout(harness.session_factory, uuid.uuid4(), harness.settings, harness.rail)


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_completed_report_closes_payout(self, harness) -> None:
        deal_id, payout = await released_deal(harness)
        assert payout.status == PayoutStatus.PROCESSING

        async with harness.scope() as session:
            updated = await harness.payouts(session).handle_payout_callback(
                "po_test_1", PayoutStatus.COMPLETED, now=T0
            )

        assert updated.status == PayoutStatus.COMPLETED
        assert updated.completed_at == T0
        assert "PAYOUT_UPDATED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_failed_report_records_failure(self, harness) -> None:
        deal_id, _ = await released_deal(harness)

        async with harness.scope() as session:
            await harness.payouts(session).handle_payout_callback(
                "po_test_1",
                PayoutStatus.FAILED,
                failure_code="ACCOUNT_CLOSED",
                failure_message="Destination account closed",
            )

        (payout,) = await harness.deal_payouts(deal_id)
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_code == "ACCOUNT_CLOSED"
        assert not payout.retryable

    @pytest.mark.asyncio
    async def test_completed_payout_cannot_fail(self, harness) -> None:
        await released_deal(harness)
        async with harness.scope() as session:
            await harness.payouts(session).handle_payout_callback("po_test_1", PayoutStatus.COMPLETED)

        with pytest.raises(PayoutStateError):
            async with harness.scope() as session:
                await harness.payouts(session).handle_payout_callback("po_test_1", PayoutStatus.FAILED)

    @pytest.mark.asyncio
    async def test_repeated_report_is_a_no_op(self, harness) -> None:
        deal_id, _ = await released_deal(harness)
        before = (await harness.event_types(deal_id)).count("PAYOUT_UPDATED")

        async with harness.scope() as session:
            payout = await harness.payouts(session).handle_payout_callback(
                "po_test_1", PayoutStatus.PROCESSING
            )

        assert payout.status == PayoutStatus.PROCESSING
        assert (await harness.event_types(deal_id)).count("PAYOUT_UPDATED") == before

    @pytest.mark.asyncio
    async def test_unknown_reference(self, harness) -> None:
        with pytest.raises(PayoutNotFoundError):
            async with harness.scope() as session:
                await harness.payouts(session).handle_payout_callback(
                    "po_missing", PayoutStatus.COMPLETED
                )
