"""Tests for deal setup and the non-release lifecycle.

Covers funding paths per category, the provisional credit and its rollback
on cancellation, rejected transitions surviving rollback in the event log,
and grace-period scheduling.
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import PAYEE_ID, PAYER_ID, T0
from escrow_engine.domain.clock import ensure_utc
from escrow_engine.domain.enums import DealCategory, DealStatus
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DealNotFoundError,
    InvalidTransitionError,
    MilestoneScheduleError,
    RailTemporaryFailureError,
)
from escrow_engine.domain.milestones import MilestonePlan


class TestCreateDeal:
    @pytest.mark.asyncio
    async def test_created_awaiting_payment(self, harness) -> None:
        deal_id = await harness.create_deal("250.00")

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.AWAITING_PAYMENT
        assert deal.total_amount == Decimal("250.00")
        assert deal.version == 0
        assert not deal.allows_partial_release
        assert await harness.event_types(deal_id) == ["DEAL_CREATED"]

    @pytest.mark.asyncio
    async def test_payer_and_payee_must_differ(self, harness) -> None:
        with pytest.raises(ValueError, match="must be different"):
            async with harness.scope() as session:
                await harness.deals(session).create_deal(
                    payer_id=PAYER_ID,
                    payee_id=PAYER_ID,
                    total_amount=Decimal("10.00"),
                    currency="USD",
                    category=DealCategory.SERVICE,
                    context=harness.payer,
                )

    @pytest.mark.asyncio
    async def test_milestone_schedule_is_validated(self, harness) -> None:
        plans = [MilestonePlan(title="only", amount=Decimal("90.00"), due_date=T0)]
        with pytest.raises(MilestoneScheduleError):
            await harness.create_deal("100.00", milestones=plans)

    @pytest.mark.asyncio
    async def test_milestones_get_default_window_and_limit(self, harness) -> None:
        plans = [
            MilestonePlan(title="first", amount=Decimal("40.00"), due_date=T0),
            MilestonePlan(title="second", amount=Decimal("60.00"), due_date=T0 + timedelta(days=7)),
        ]
        deal_id = await harness.create_deal("100.00", milestones=plans)

        deal = await harness.get_deal(deal_id)
        assert deal.allows_partial_release
        assert [m.index for m in deal.milestones] == [0, 1]
        assert all(m.review_window_days == 3 for m in deal.milestones)
        assert all(m.revision_limit == 1 for m in deal.milestones)

    @pytest.mark.asyncio
    async def test_deal_without_milestones_loads_them_before_commit(self, harness) -> None:
        async with harness.scope() as session:
            deal = await harness.deals(session).create_deal(
                payer_id=PAYER_ID,
                payee_id=PAYEE_ID,
                total_amount=Decimal("40.00"),
                currency="usd",
                category=DealCategory.DIGITAL_GOOD,
                context=harness.payer,
            )

        # Read after the session closed: no lazy load may be needed.
        assert deal.milestones == []
        assert deal.currency == "USD"

    @pytest.mark.asyncio
    async def test_unknown_deal(self, harness) -> None:
        async with harness.scope() as session:
            with pytest.raises(DealNotFoundError):
                await harness.deals(session).get_deal(uuid.uuid4())


class TestFunding:
    @pytest.mark.asyncio
    async def test_service_deal_goes_to_funded(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00", DealCategory.SERVICE)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.FUNDED
        assert deal.funded_at is not None
        assert deal.payment_ref == "pi_test"
        assert deal.provisional_credit == Decimal("0")

    @pytest.mark.asyncio
    async def test_physical_good_awaits_shipment_with_provisional_credit(self, harness) -> None:
        deal_id = await harness.create_funded_deal("500.00", DealCategory.PHYSICAL_GOOD)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.AWAITING_SHIPMENT
        assert deal.provisional_credit == Decimal("500.00")
        account = await harness.payee_account()
        assert account.pending_balance == Decimal("500.00")
        assert "PROVISIONAL_CREDIT_APPLIED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_payee_cannot_fund(self, harness) -> None:
        deal_id = await harness.create_deal("100.00")

        with pytest.raises(InvalidTransitionError):
            async with harness.scope() as session:
                await harness.deals(session).fund_deal(deal_id, harness.payee)

        assert (await harness.get_deal(deal_id)).status == DealStatus.AWAITING_PAYMENT


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_from_awaiting_shipment_rolls_back_credit_and_refunds(
        self, harness
    ) -> None:
        deal_id = await harness.create_funded_deal("500.00", DealCategory.PHYSICAL_GOOD)

        async with harness.scope() as session:
            await harness.deals(session).cancel_deal(deal_id, harness.payer)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.CANCELED
        assert deal.provisional_credit == Decimal("0.00")
        account = await harness.payee_account()
        assert account.pending_balance == Decimal("0.00")
        assert account.available_balance == Decimal("0.00")

        balance = await harness.balance(deal_id)
        assert balance.refunded == Decimal("500.00")
        assert balance.custody == Decimal("0.00")
        assert await harness.ledger_types(deal_id) == ["FUND", "REFUND_TO_PAYER"]
        assert harness.rail.refunds == [{"payment_ref": "pi_test", "amount": Decimal("500.00")}]
        assert "PROVISIONAL_CREDIT_ROLLED_BACK" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_cancel_before_payment_moves_no_money(self, harness) -> None:
        deal_id = await harness.create_deal("100.00")

        async with harness.scope() as session:
            await harness.deals(session).cancel_deal(deal_id, harness.payee)

        assert (await harness.get_deal(deal_id)).status == DealStatus.CANCELED
        assert await harness.ledger_types(deal_id) == []

    @pytest.mark.asyncio
    async def test_refund_rail_failure_does_not_undo_cancellation(self, harness) -> None:
        deal_id = await harness.create_funded_deal("500.00", DealCategory.PHYSICAL_GOOD)
        harness.rail.refund_error = RailTemporaryFailureError()

        async with harness.scope() as session:
            await harness.deals(session).cancel_deal(deal_id, harness.admin)

        assert (await harness.get_deal(deal_id)).status == DealStatus.CANCELED
        assert (await harness.balance(deal_id)).custody == Decimal("0.00")
        assert "REFUND_RAIL_FAILED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_rolled_back_cancellation_never_refunds_on_the_rail(self, harness) -> None:
        deal_id = await harness.create_funded_deal("500.00", DealCategory.PHYSICAL_GOOD)

        with pytest.raises(RuntimeError):
            async with harness.scope() as session:
                await harness.deals(session).cancel_deal(deal_id, harness.payer)
                raise RuntimeError("failure after cancel")

        assert harness.rail.refunds == []
        assert (await harness.get_deal(deal_id)).status == DealStatus.AWAITING_SHIPMENT
        assert await harness.ledger_types(deal_id) == ["FUND"]

    @pytest.mark.asyncio
    async def test_cannot_cancel_in_transit(self, harness) -> None:
        deal_id = await harness.create_funded_deal("500.00", DealCategory.PHYSICAL_GOOD)
        async with harness.scope() as session:
            await harness.deals(session).mark_shipped(deal_id, harness.payee, "TRACK-1")

        with pytest.raises(InvalidTransitionError):
            async with harness.scope() as session:
                await harness.deals(session).cancel_deal(deal_id, harness.payer)

        assert (await harness.payee_account()).pending_balance == Decimal("500.00")


class TestRejectedTransitions:
    @pytest.mark.asyncio
    async def test_rejection_is_logged_and_survives_rollback(self, harness) -> None:
        deal_id = await harness.create_funded_deal("500.00", DealCategory.PHYSICAL_GOOD)

        with pytest.raises(InvalidTransitionError) as exc_info:
            async with harness.scope() as session:
                await harness.deals(session).cancel_deal(deal_id, harness.payee)

        assert exc_info.value.code == "INVALID_TRANSITION"
        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.AWAITING_SHIPMENT

        rejected = [e for e in await harness.events(deal_id) if e.event_type == "TRANSITION_REJECTED"]
        assert len(rejected) == 1
        assert rejected[0].actor_id == PAYEE_ID
        assert rejected[0].old_status == "AWAITING_SHIPMENT"
        assert rejected[0].payload["attempted_status"] == "CANCELED"

    @pytest.mark.asyncio
    async def test_stale_expected_status_raises_concurrent_modification(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")
        stale = dataclasses.replace(harness.payee, expected_status=DealStatus.AWAITING_PAYMENT)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            async with harness.scope() as session:
                await harness.deals(session).submit_proof(deal_id, stale)

        assert exc_info.value.retryable
        assert (await harness.get_deal(deal_id)).status == DealStatus.FUNDED

    @pytest.mark.asyncio
    async def test_every_applied_transition_bumps_version(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00")
        async with harness.scope() as session:
            await harness.deals(session).submit_proof(deal_id, harness.payee)
        async with harness.scope() as session:
            await harness.deals(session).start_review(deal_id, harness.payer)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.UNDER_REVIEW
        assert deal.version == 3
        changes = [e for e in await harness.events(deal_id) if e.event_type == "STATUS_CHANGED"]
        assert [(e.old_status, e.new_status) for e in changes] == [
            ("AWAITING_PAYMENT", "FUNDED"),
            ("FUNDED", "PROOF_SUBMITTED"),
            ("PROOF_SUBMITTED", "UNDER_REVIEW"),
        ]


class TestGracePeriod:
    @pytest.mark.asyncio
    async def test_proof_schedules_auto_release(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00", DealCategory.SERVICE)
        async with harness.scope() as session:
            await harness.deals(session).submit_proof(deal_id, harness.payee, now=T0)

        deal = await harness.get_deal(deal_id)
        assert ensure_utc(deal.auto_release_at) == T0 + timedelta(hours=72)

    @pytest.mark.asyncio
    async def test_digital_goods_use_shorter_grace(self, harness) -> None:
        deal_id = await harness.create_funded_deal("100.00", DealCategory.DIGITAL_GOOD)
        async with harness.scope() as session:
            await harness.deals(session).submit_proof(deal_id, harness.payee, now=T0)

        deal = await harness.get_deal(deal_id)
        assert ensure_utc(deal.auto_release_at) == T0 + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_delivery_confirmation_starts_grace(self, harness) -> None:
        deal_id = await harness.create_funded_deal("500.00", DealCategory.PHYSICAL_GOOD)
        async with harness.scope() as session:
            await harness.deals(session).mark_shipped(deal_id, harness.payee, "TRACK-1")
        async with harness.scope() as session:
            await harness.deals(session).confirm_delivery(deal_id, harness.system, now=T0)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.DELIVERED_PENDING_RELEASE
        assert ensure_utc(deal.auto_release_at) == T0 + timedelta(hours=72)
