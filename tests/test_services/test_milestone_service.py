"""Tests for milestone delivery, revision and approval.

The review window always runs from the latest delivery, and revisions are
counted against the milestone's limit since the last release.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import T0
from escrow_engine.domain.enums import DealStatus, MilestoneStatus
from escrow_engine.domain.exceptions import (
    MilestoneStateError,
    NotActiveMilestoneError,
    ReleaseNotEligibleError,
    ReviewWindowExpiredError,
    RevisionLimitExceededError,
)
from escrow_engine.domain.results import ReleaseContext


async def deliver(harness, milestone_id, now) -> None:
    async with harness.scope() as session:
        await harness.milestones(session).submit_delivery(
            milestone_id, harness.payee, ["asset-1"], note="draft", now=now
        )


async def request_revision(harness, milestone_id, now) -> None:
    async with harness.scope() as session:
        await harness.milestones(session).request_revision(
            milestone_id, harness.payer, note="please adjust", now=now
        )


async def approve(harness, milestone_id, now=None):
    context = ReleaseContext(actor_id=harness.payer.actor_id, actor_role=harness.payer.actor_role)
    async with harness.scope() as session:
        return await harness.milestones(session).approve_milestone(milestone_id, context, now)


async def get_milestone(harness, milestone_id):
    async with harness.session_factory() as session:
        return await harness.milestones(session).get_milestone(milestone_id)


class TestDelivery:
    @pytest.mark.asyncio
    async def test_delivery_puts_deal_up_for_review(self, harness) -> None:
        deal_id, (m0, _) = await harness.create_milestone_deal()

        await deliver(harness, m0, T0)

        milestone = await get_milestone(harness, m0)
        assert milestone.status == MilestoneStatus.DELIVERED
        assert milestone.delivered_at == T0
        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.PROOF_SUBMITTED
        # Milestone deals do not use the deal-level grace deadline.
        assert deal.auto_release_at is None
        assert "MILESTONE_DELIVERED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_only_active_milestone_can_be_delivered(self, harness) -> None:
        _, (_, m1) = await harness.create_milestone_deal()

        with pytest.raises(NotActiveMilestoneError) as exc_info:
            await deliver(harness, m1, T0)

        assert exc_info.value.code == "NOT_ACTIVE_MILESTONE"

    @pytest.mark.asyncio
    async def test_only_payee_delivers(self, harness) -> None:
        _, (m0, _) = await harness.create_milestone_deal()

        with pytest.raises(MilestoneStateError):
            async with harness.scope() as session:
                await harness.milestones(session).submit_delivery(m0, harness.payer, ["x"], now=T0)


class TestReviewWindow:
    """Deal of $100 + $150, three-day window, first delivery at T0."""

    @pytest.mark.asyncio
    async def test_window_restarts_from_redelivery(self, harness) -> None:
        deal_id, (m0, _) = await harness.create_milestone_deal(revision_limit=2)
        await deliver(harness, m0, T0)

        await request_revision(harness, m0, T0 + timedelta(days=2))
        assert (await harness.get_deal(deal_id)).status == DealStatus.UNDER_REVIEW
        assert (await get_milestone(harness, m0)).status == MilestoneStatus.IN_REVISION

        redelivered_at = T0 + timedelta(days=2, hours=1)
        await deliver(harness, m0, redelivered_at)

        # Past the original deadline (T0+3d) but inside the new one.
        await request_revision(harness, m0, T0 + timedelta(days=4))
        async with harness.session_factory() as session:
            revisions = await harness.milestones(session).list_revisions(m0)
        assert len(revisions) == 2

    @pytest.mark.asyncio
    async def test_window_expires_relative_to_latest_delivery(self, harness) -> None:
        _, (m0, _) = await harness.create_milestone_deal(revision_limit=2)
        await deliver(harness, m0, T0)
        await request_revision(harness, m0, T0 + timedelta(days=2))
        redelivered_at = T0 + timedelta(days=2)
        await deliver(harness, m0, redelivered_at)

        with pytest.raises(ReviewWindowExpiredError) as exc_info:
            await request_revision(harness, m0, redelivered_at + timedelta(days=3, minutes=1))

        assert (redelivered_at + timedelta(days=3)).isoformat() in exc_info.value.message

    @pytest.mark.asyncio
    async def test_revision_limit_enforced(self, harness) -> None:
        _, (m0, _) = await harness.create_milestone_deal(revision_limit=1)
        await deliver(harness, m0, T0)
        await request_revision(harness, m0, T0 + timedelta(days=2))
        await deliver(harness, m0, T0 + timedelta(days=2, hours=1))

        with pytest.raises(RevisionLimitExceededError):
            await request_revision(harness, m0, T0 + timedelta(days=4))

        assert (await get_milestone(harness, m0)).status == MilestoneStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_revision_needs_a_delivery(self, harness) -> None:
        _, (m0, _) = await harness.create_milestone_deal()

        with pytest.raises(MilestoneStateError, match="no delivery"):
            await request_revision(harness, m0, T0)


class TestApproval:
    @pytest.mark.asyncio
    async def test_approving_milestones_in_order_releases_the_deal(self, harness) -> None:
        deal_id, (m0, m1) = await harness.create_milestone_deal()

        await deliver(harness, m0, T0)
        first = await approve(harness, m0)
        assert first.gross == Decimal("100.00")
        assert first.net == Decimal("92.00")
        assert first.deal_status is DealStatus.FUNDED
        assert (await harness.balance(deal_id)).custody == Decimal("150.00")

        await deliver(harness, m1, T0 + timedelta(days=5))
        second = await approve(harness, m1)
        assert second.gross == Decimal("150.00")
        assert second.fee == Decimal("12.00")
        assert second.deal_status is DealStatus.RELEASED

        balance = await harness.balance(deal_id)
        assert balance.custody == Decimal("0.00")
        assert balance.fees == Decimal("20.00")
        assert (await harness.payee_account()).available_balance == Decimal("230.00")
        event_types = await harness.event_types(deal_id)
        assert event_types.count("MILESTONE_APPROVED") == 2
        assert event_types.count("MILESTONE_RELEASED") == 2

    @pytest.mark.asyncio
    async def test_undelivered_milestone_cannot_be_approved(self, harness) -> None:
        _, (m0, _) = await harness.create_milestone_deal()

        with pytest.raises(ReleaseNotEligibleError):
            await approve(harness, m0)

    @pytest.mark.asyncio
    async def test_later_milestone_cannot_be_approved_first(self, harness) -> None:
        _, (m0, m1) = await harness.create_milestone_deal()
        await deliver(harness, m0, T0)

        with pytest.raises(NotActiveMilestoneError):
            await approve(harness, m1)

    @pytest.mark.asyncio
    async def test_approval_is_idempotent(self, harness) -> None:
        deal_id, (m0, _) = await harness.create_milestone_deal()
        await deliver(harness, m0, T0)

        first = await approve(harness, m0)
        second = await approve(harness, m0)

        assert second.replayed
        assert second.ledger_entry_id == first.ledger_entry_id
        assert (await harness.ledger_types(deal_id)).count("RELEASE_TO_PAYEE") == 1


class TestAutoApprove:
    @pytest.mark.asyncio
    async def test_auto_approves_after_window(self, harness) -> None:
        deal_id, (m0, _) = await harness.create_milestone_deal()
        await deliver(harness, m0, T0)

        async with harness.scope() as session:
            result = await harness.milestones(session).auto_approve_milestone(
                m0, now=T0 + timedelta(days=3, seconds=1)
            )

        assert result.milestone_id == m0
        assert (await get_milestone(harness, m0)).status == MilestoneStatus.RELEASED
        assert "MILESTONE_AUTO_APPROVED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_not_before_window_lapses(self, harness) -> None:
        _, (m0, _) = await harness.create_milestone_deal()
        await deliver(harness, m0, T0)

        with pytest.raises(ReleaseNotEligibleError, match="review window still open"):
            async with harness.scope() as session:
                await harness.milestones(session).auto_approve_milestone(
                    m0, now=T0 + timedelta(days=2)
                )

    @pytest.mark.asyncio
    async def test_auto_approve_disabled(self, harness) -> None:
        _, (m0, _) = await harness.create_milestone_deal(auto_approve=False)
        await deliver(harness, m0, T0)

        with pytest.raises(ReleaseNotEligibleError, match="auto-approve disabled"):
            async with harness.scope() as session:
                await harness.milestones(session).auto_approve_milestone(
                    m0, now=T0 + timedelta(days=10)
                )
