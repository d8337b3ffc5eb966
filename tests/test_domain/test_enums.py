"""Tests for domain enumerations."""

from __future__ import annotations

from escrow_engine.domain.enums import (
    ACTIVE_DISPUTE_STATUSES,
    DealStatus,
    DisputeOutcome,
    DisputeStatus,
    LedgerEntryType,
    MilestoneStatus,
)


class TestDealStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "AWAITING_PAYMENT", "FUNDED", "AWAITING_SHIPMENT", "IN_TRANSIT",
            "PROOF_SUBMITTED", "UNDER_REVIEW", "DELIVERED_PENDING_RELEASE",
            "DISPUTED", "RESOLVED", "RELEASED", "REFUNDED", "CANCELED",
        }
        assert {s.value for s in DealStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(DealStatus.FUNDED, str)
        assert DealStatus.FUNDED == "FUNDED"

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in DealStatus if s.is_terminal}
        assert terminal == {DealStatus.RELEASED, DealStatus.REFUNDED, DealStatus.CANCELED}


class TestDisputeStatus:
    def test_active_statuses(self) -> None:
        assert ACTIVE_DISPUTE_STATUSES == {
            DisputeStatus.OPEN,
            DisputeStatus.NEGOTIATION,
            DisputeStatus.ADMIN_REVIEW,
            DisputeStatus.NEEDS_INFO,
        }
        assert not DisputeStatus.RESOLVED_PAYER.is_active

    def test_outcome_closes_with_status(self) -> None:
        assert DisputeOutcome.RELEASE.dispute_status is DisputeStatus.RESOLVED_PAYEE
        assert DisputeOutcome.SPLIT.dispute_status is DisputeStatus.RESOLVED_PAYEE
        assert DisputeOutcome.REFUND.dispute_status is DisputeStatus.RESOLVED_PAYER
        assert DisputeOutcome.REJECT.dispute_status is DisputeStatus.REJECTED


class TestLedgerEntryType:
    def test_fee_does_not_leave_custody(self) -> None:
        assert not LedgerEntryType.FEE.is_outflow
        assert not LedgerEntryType.FUND.is_outflow

    def test_outflows(self) -> None:
        assert LedgerEntryType.RELEASE_TO_PAYEE.is_outflow
        assert LedgerEntryType.REFUND_TO_PAYER.is_outflow
        assert LedgerEntryType.SPLIT_RELEASE.is_outflow

    def test_clawbacks_are_not_custody_outflows(self) -> None:
        for entry_type in (LedgerEntryType.CHARGEBACK, LedgerEntryType.POST_RELEASE_REFUND):
            assert entry_type.is_clawback
            assert not entry_type.is_outflow
        assert not LedgerEntryType.RELEASE_TO_PAYEE.is_clawback


class TestMilestoneStatus:
    def test_values(self) -> None:
        assert {s.value for s in MilestoneStatus} == {
            "PENDING", "DELIVERED", "IN_REVISION", "RELEASED", "DISPUTED", "REFUNDED",
        }
