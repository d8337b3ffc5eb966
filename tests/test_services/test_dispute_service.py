"""Tests for the dispute freeze guard, the dispute lifecycle and clawbacks
after release."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import T0
from escrow_engine.domain.enums import (
    DealStatus,
    DisputeOutcome,
    DisputeStatus,
    MilestoneStatus,
)
from escrow_engine.domain.exceptions import (
    ClawbackNotAllowedError,
    DisputeStateError,
    InvalidTransitionError,
    NotActiveMilestoneError,
    RailTemporaryFailureError,
)
from escrow_engine.domain.results import ReleaseContext
from escrow_engine.infrastructure.notifications import wait_for_pending_notifications

REASON = "Delivered work does not match the brief"


async def disputed_deal(harness, amount: str = "100.00"):
    deal_id = await harness.create_funded_deal(amount)
    async with harness.scope() as session:
        await harness.deals(session).submit_proof(deal_id, harness.payee, now=T0)
    async with harness.scope() as session:
        dispute = await harness.disputes(session).open_dispute(deal_id, harness.payer, REASON)
    return deal_id, dispute.id


async def released_deal(harness, amount: str = "100.00"):
    deal_id = await harness.create_funded_deal(amount)
    async with harness.scope() as session:
        await harness.deals(session).submit_proof(deal_id, harness.payee, now=T0)
    context = ReleaseContext(actor_id=harness.payer.actor_id, actor_role=harness.payer.actor_role)
    async with harness.scope() as session:
        await harness.releases(session).release(deal_id, None, context)
    return deal_id


async def resolve(harness, dispute_id, outcome: DisputeOutcome, payee_amount=None):
    async with harness.scope() as session:
        return await harness.disputes(session).resolve_dispute(
            dispute_id, outcome, harness.admin, note="reviewed", payee_amount=payee_amount
        )


class TestFreezeGuard:
    @pytest.mark.asyncio
    async def test_deal_wide_dispute_freezes_everything(self, harness) -> None:
        deal_id, (m0, m1) = await harness.create_milestone_deal()
        async with harness.scope() as session:
            dispute = await harness.disputes(session).open_dispute(deal_id, harness.payer, REASON)

        async with harness.session_factory() as session:
            guard = harness.disputes(session).guard
            for milestone_id in (None, m0, m1):
                freeze = await guard.is_frozen(deal_id, milestone_id)
                assert freeze.frozen
                assert freeze.dispute_id == dispute.id
                assert freeze.reason == "dispute_active"

    @pytest.mark.asyncio
    async def test_milestone_dispute_freezes_only_its_milestone(self, harness) -> None:
        deal_id, (m0, m1) = await harness.create_milestone_deal()
        async with harness.scope() as session:
            await harness.disputes(session).open_dispute(
                deal_id, harness.payee, REASON, milestone_id=m0
            )

        async with harness.session_factory() as session:
            guard = harness.disputes(session).guard
            assert (await guard.is_frozen(deal_id, m0)).frozen
            assert not (await guard.is_frozen(deal_id, m1)).frozen
            assert (await guard.is_frozen(deal_id)).frozen

    @pytest.mark.asyncio
    async def test_resolved_dispute_lifts_freeze(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)
        await resolve(harness, dispute_id, DisputeOutcome.REJECT)

        async with harness.session_factory() as session:
            freeze = await harness.disputes(session).guard.is_frozen(deal_id)
        assert not freeze.frozen


class TestOpenDispute:
    @pytest.mark.asyncio
    async def test_opening_moves_deal_to_disputed_and_stops_auto_release(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.DISPUTED
        assert deal.auto_release_at is None
        async with harness.session_factory() as session:
            dispute = await harness.disputes(session).get_dispute(dispute_id)
        assert dispute.status == DisputeStatus.OPEN
        assert dispute.opener_role == "PAYER"

    @pytest.mark.asyncio
    async def test_one_active_dispute_per_deal(self, harness) -> None:
        deal_id, _ = await disputed_deal(harness)

        with pytest.raises(InvalidTransitionError):
            async with harness.scope() as session:
                await harness.disputes(session).open_dispute(deal_id, harness.payee, REASON)

    @pytest.mark.asyncio
    async def test_admin_cannot_open(self, harness) -> None:
        deal_id = await harness.create_funded_deal()

        with pytest.raises(DisputeStateError):
            async with harness.scope() as session:
                await harness.disputes(session).open_dispute(deal_id, harness.admin, REASON)

    @pytest.mark.asyncio
    async def test_milestone_dispute_targets_active_milestone(self, harness) -> None:
        deal_id, (_, m1) = await harness.create_milestone_deal()

        with pytest.raises(NotActiveMilestoneError):
            async with harness.scope() as session:
                await harness.disputes(session).open_dispute(
                    deal_id, harness.payer, REASON, milestone_id=m1
                )


class TestEscalation:
    @pytest.mark.asyncio
    async def test_escalate_between_active_statuses(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)

        async with harness.scope() as session:
            dispute = await harness.disputes(session).escalate_dispute(
                dispute_id, DisputeStatus.ADMIN_REVIEW, harness.payer, note="no reply"
            )

        assert dispute.status == DisputeStatus.ADMIN_REVIEW
        assert "DISPUTE_ESCALATED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_cannot_escalate_to_a_resolution(self, harness) -> None:
        _, dispute_id = await disputed_deal(harness)

        with pytest.raises(DisputeStateError, match="not an escalation status"):
            async with harness.scope() as session:
                await harness.disputes(session).escalate_dispute(
                    dispute_id, DisputeStatus.RESOLVED_PAYEE, harness.payer
                )


class TestResolution:
    @pytest.mark.asyncio
    async def test_release_outcome(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)

        dispute = await resolve(harness, dispute_id, DisputeOutcome.RELEASE)

        assert dispute.status == DisputeStatus.RESOLVED_PAYEE
        assert dispute.resolved_by == "admin-1"
        assert (await harness.get_deal(deal_id)).status == DealStatus.RELEASED
        balance = await harness.balance(deal_id)
        assert balance.released == Decimal("100.00")
        assert balance.custody == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_refund_outcome(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)

        dispute = await resolve(harness, dispute_id, DisputeOutcome.REFUND)

        assert dispute.status == DisputeStatus.RESOLVED_PAYER
        assert (await harness.get_deal(deal_id)).status == DealStatus.REFUNDED
        assert (await harness.balance(deal_id)).refunded == Decimal("100.00")
        assert harness.rail.refunds == [{"payment_ref": "pi_test", "amount": Decimal("100.00")}]

    @pytest.mark.asyncio
    async def test_split_outcome(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)

        await resolve(harness, dispute_id, DisputeOutcome.SPLIT, payee_amount=Decimal("60.00"))

        assert (await harness.get_deal(deal_id)).status == DealStatus.RELEASED
        assert await harness.ledger_types(deal_id) == [
            "FUND",
            "SPLIT_RELEASE",
            "FEE",
            "REFUND_TO_PAYER",
        ]
        balance = await harness.balance(deal_id)
        assert balance.released == Decimal("60.00")
        assert balance.fees == Decimal("4.80")
        assert balance.refunded == Decimal("40.00")
        assert balance.custody == Decimal("0.00")
        assert (await harness.payee_account()).available_balance == Decimal("55.20")

    @pytest.mark.asyncio
    async def test_split_amount_must_be_inside_custody(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)

        with pytest.raises(DisputeStateError, match="between 0 and"):
            await resolve(harness, dispute_id, DisputeOutcome.SPLIT, payee_amount=Decimal("100.00"))

        assert (await harness.get_deal(deal_id)).status == DealStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_reject_outcome_returns_to_funded(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)

        dispute = await resolve(harness, dispute_id, DisputeOutcome.REJECT)

        assert dispute.status == DisputeStatus.REJECTED
        assert (await harness.get_deal(deal_id)).status == DealStatus.FUNDED
        assert (await harness.balance(deal_id)).custody == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_only_admin_resolves(self, harness) -> None:
        _, dispute_id = await disputed_deal(harness)

        with pytest.raises(DisputeStateError, match="Only an admin"):
            async with harness.scope() as session:
                await harness.disputes(session).resolve_dispute(
                    dispute_id, DisputeOutcome.RELEASE, harness.payer
                )

    @pytest.mark.asyncio
    async def test_resolved_dispute_cannot_be_resolved_again(self, harness) -> None:
        _, dispute_id = await disputed_deal(harness)
        await resolve(harness, dispute_id, DisputeOutcome.REJECT)

        with pytest.raises(DisputeStateError, match="already"):
            await resolve(harness, dispute_id, DisputeOutcome.RELEASE)


class TestMilestoneDisputeResolution:
    @pytest.mark.asyncio
    async def test_refunding_a_milestone_keeps_the_rest_in_custody(self, harness) -> None:
        deal_id, (m0, m1) = await harness.create_milestone_deal()
        async with harness.scope() as session:
            dispute = await harness.disputes(session).open_dispute(
                deal_id, harness.payer, REASON, milestone_id=m0
            )

        await resolve(harness, dispute.id, DisputeOutcome.REFUND)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.FUNDED
        statuses = {m.id: m.status for m in deal.milestones}
        assert statuses[m0] == MilestoneStatus.REFUNDED
        assert statuses[m1] == MilestoneStatus.PENDING
        balance = await harness.balance(deal_id)
        assert balance.refunded == Decimal("100.00")
        assert balance.custody == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_releasing_a_disputed_milestone(self, harness) -> None:
        deal_id, (m0, _) = await harness.create_milestone_deal()
        async with harness.scope() as session:
            await harness.milestones(session).submit_delivery(m0, harness.payee, ["a"], now=T0)
        async with harness.scope() as session:
            dispute = await harness.disputes(session).open_dispute(
                deal_id, harness.payer, REASON, milestone_id=m0
            )

        await resolve(harness, dispute.id, DisputeOutcome.RELEASE)

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.FUNDED
        assert deal.milestones[0].status == MilestoneStatus.RELEASED
        assert (await harness.balance(deal_id)).custody == Decimal("150.00")


class TestChargeback:
    @pytest.mark.asyncio
    async def test_chargeback_debits_payee_without_reversing_release(self, harness) -> None:
        deal_id = await released_deal(harness)
        assert (await harness.payee_account()).available_balance == Decimal("92.00")

        async with harness.scope() as session:
            result = await harness.disputes(session).record_chargeback(
                deal_id, Decimal("100.00"), harness.system, "cb_1001", reason="fraudulent"
            )

        assert not result.replayed
        assert result.amount == Decimal("100.00")
        assert result.payee_available_balance == Decimal("-8.00")
        assert (await harness.payee_account()).available_balance == Decimal("-8.00")

        deal = await harness.get_deal(deal_id)
        assert deal.status == DealStatus.RELEASED
        assert await harness.ledger_types(deal_id) == [
            "FUND",
            "RELEASE_TO_PAYEE",
            "FEE",
            "CHARGEBACK",
        ]
        balance = await harness.balance(deal_id)
        assert balance.released == Decimal("100.00")
        assert balance.clawed_back == Decimal("100.00")
        assert balance.custody == Decimal("0.00")
        assert "CHARGEBACK_RECORDED" in await harness.event_types(deal_id)
        # The network already returned the money to the payer.
        assert harness.rail.refunds == []

    @pytest.mark.asyncio
    async def test_same_network_case_is_recorded_once(self, harness) -> None:
        deal_id = await released_deal(harness)

        for _ in range(2):
            async with harness.scope() as session:
                result = await harness.disputes(session).record_chargeback(
                    deal_id, Decimal("40.00"), harness.system, "cb_2002"
                )

        assert result.replayed
        assert (await harness.payee_account()).available_balance == Decimal("52.00")
        assert (await harness.ledger_types(deal_id)).count("CHARGEBACK") == 1

    @pytest.mark.asyncio
    async def test_cannot_claw_back_more_than_was_released(self, harness) -> None:
        deal_id = await released_deal(harness)
        async with harness.scope() as session:
            await harness.disputes(session).record_chargeback(
                deal_id, Decimal("90.00"), harness.system, "cb_1"
            )

        with pytest.raises(ClawbackNotAllowedError, match="exceeds 10.00"):
            async with harness.scope() as session:
                await harness.disputes(session).record_chargeback(
                    deal_id, Decimal("10.01"), harness.system, "cb_2"
                )

        assert (await harness.payee_account()).available_balance == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_deal_still_in_escrow_is_refused(self, harness) -> None:
        deal_id = await harness.create_funded_deal()

        with pytest.raises(ClawbackNotAllowedError, match="still FUNDED"):
            async with harness.scope() as session:
                await harness.disputes(session).record_chargeback(
                    deal_id, Decimal("10.00"), harness.system, "cb_3"
                )

    @pytest.mark.asyncio
    async def test_refunded_deal_has_nothing_to_claw_back(self, harness) -> None:
        deal_id, dispute_id = await disputed_deal(harness)
        await resolve(harness, dispute_id, DisputeOutcome.REFUND)

        with pytest.raises(ClawbackNotAllowedError, match="no released funds"):
            async with harness.scope() as session:
                await harness.disputes(session).record_chargeback(
                    deal_id, Decimal("10.00"), harness.system, "cb_4"
                )

    @pytest.mark.asyncio
    async def test_parties_cannot_record_chargebacks(self, harness) -> None:
        deal_id = await released_deal(harness)

        with pytest.raises(DisputeStateError):
            async with harness.scope() as session:
                await harness.disputes(session).record_chargeback(
                    deal_id, Decimal("10.00"), harness.payer, "cb_5"
                )

    @pytest.mark.asyncio
    async def test_payee_is_notified_after_commit(self, harness, notifier) -> None:
        deal_id = await released_deal(harness)
        await wait_for_pending_notifications()
        notifier.sent.clear()

        async with harness.scope() as session:
            await harness.disputes(session).record_chargeback(
                deal_id, Decimal("5.00"), harness.system, "cb_6"
            )

        await wait_for_pending_notifications()
        assert [n.kind for n in notifier.sent] == ["funds_clawed_back"]
        assert notifier.sent[0].recipients == ("payee-1",)


class TestPostReleaseRefund:
    @pytest.mark.asyncio
    async def test_refund_debits_payee_and_pays_back_payer(self, harness) -> None:
        deal_id = await released_deal(harness)

        async with harness.scope() as session:
            result = await harness.disputes(session).refund_after_release(
                deal_id, Decimal("30.00"), harness.admin, note="partial goodwill refund"
            )
            assert harness.rail.refunds == []

        assert result.payee_available_balance == Decimal("62.00")
        assert harness.rail.refunds == [{"payment_ref": "pi_test", "amount": Decimal("30.00")}]
        assert (await harness.get_deal(deal_id)).status == DealStatus.RELEASED
        assert (await harness.ledger_types(deal_id))[-1] == "POST_RELEASE_REFUND"
        assert "POST_RELEASE_REFUNDED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_idempotency_key_refunds_once(self, harness) -> None:
        deal_id = await released_deal(harness)

        for _ in range(2):
            async with harness.scope() as session:
                await harness.disputes(session).refund_after_release(
                    deal_id, Decimal("30.00"), harness.admin, idempotency_key="ops-ticket-7"
                )

        assert len(harness.rail.refunds) == 1
        assert (await harness.payee_account()).available_balance == Decimal("62.00")

    @pytest.mark.asyncio
    async def test_rail_failure_keeps_the_debit(self, harness) -> None:
        deal_id = await released_deal(harness)
        harness.rail.refund_error = RailTemporaryFailureError()

        async with harness.scope() as session:
            await harness.disputes(session).refund_after_release(
                deal_id, Decimal("30.00"), harness.admin
            )

        assert (await harness.payee_account()).available_balance == Decimal("62.00")
        assert "REFUND_RAIL_FAILED" in await harness.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_rolled_back_refund_never_reaches_the_rail(self, harness) -> None:
        deal_id = await released_deal(harness)

        with pytest.raises(RuntimeError):
            async with harness.scope() as session:
                await harness.disputes(session).refund_after_release(
                    deal_id, Decimal("30.00"), harness.admin
                )
                raise RuntimeError("failure after refund")

        assert harness.rail.refunds == []
        assert (await harness.payee_account()).available_balance == Decimal("92.00")

    @pytest.mark.asyncio
    async def test_only_admin_refunds_after_release(self, harness) -> None:
        deal_id = await released_deal(harness)

        with pytest.raises(DisputeStateError):
            async with harness.scope() as session:
                await harness.disputes(session).refund_after_release(
                    deal_id, Decimal("30.00"), harness.system
                )
