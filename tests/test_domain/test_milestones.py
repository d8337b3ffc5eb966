"""Tests for milestone ordering, review windows and schedule validation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from escrow_engine.domain.exceptions import MilestoneScheduleError
from escrow_engine.domain.milestones import (
    MilestonePlan,
    next_unreleased_milestone,
    review_deadline,
    review_window_elapsed,
    revisions_since,
    validate_milestone_schedule,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@dataclass
class FakeMilestone:
    id: str
    index: int
    status: str


def plan(amount: str, due_days: int, **kwargs) -> MilestonePlan:
    return MilestonePlan(
        title=f"due +{due_days}d",
        amount=Decimal(amount),
        due_date=T0 + timedelta(days=due_days),
        **kwargs,
    )


class TestNextUnreleasedMilestone:
    def test_lowest_unsettled_index(self) -> None:
        milestones = [
            FakeMilestone("a", 0, "RELEASED"),
            FakeMilestone("b", 1, "IN_REVISION"),
            FakeMilestone("c", 2, "PENDING"),
        ]
        assert next_unreleased_milestone(milestones) == 1

    def test_refunded_counts_as_settled(self) -> None:
        milestones = [FakeMilestone("a", 0, "REFUNDED"), FakeMilestone("b", 1, "PENDING")]
        assert next_unreleased_milestone(milestones) == 1

    def test_order_of_input_does_not_matter(self) -> None:
        milestones = [FakeMilestone("c", 2, "PENDING"), FakeMilestone("b", 1, "DELIVERED")]
        assert next_unreleased_milestone(milestones) == 1

    def test_released_ids_override_row_status(self) -> None:
        milestones = [FakeMilestone("a", 0, "DELIVERED"), FakeMilestone("b", 1, "PENDING")]
        assert next_unreleased_milestone(milestones, released_ids={"a"}) == 1

    def test_all_settled(self) -> None:
        milestones = [FakeMilestone("a", 0, "RELEASED"), FakeMilestone("b", 1, "REFUNDED")]
        assert next_unreleased_milestone(milestones) is None

    def test_empty(self) -> None:
        assert next_unreleased_milestone([]) is None


class TestReviewWindow:
    def test_deadline(self) -> None:
        assert review_deadline(T0, 3) == T0 + timedelta(days=3)

    def test_window_elapses_strictly_after_deadline(self) -> None:
        deadline = T0 + timedelta(days=3)
        assert not review_window_elapsed(T0, 3, deadline)
        assert review_window_elapsed(T0, 3, deadline + timedelta(seconds=1))

    def test_zero_day_window(self) -> None:
        assert review_window_elapsed(T0, 0, T0 + timedelta(microseconds=1))


class TestRevisionsSince:
    def test_counts_all_without_cutoff(self) -> None:
        times = [T0, T0 + timedelta(days=1)]
        assert revisions_since(times, None) == 2

    def test_counts_only_after_cutoff(self) -> None:
        times = [T0, T0 + timedelta(days=1), T0 + timedelta(days=2)]
        assert revisions_since(times, T0 + timedelta(days=1)) == 1


class TestValidateMilestoneSchedule:
    def test_valid_schedule(self) -> None:
        validate_milestone_schedule(
            Decimal("250.00"),
            [plan("100.00", 10), plan("150.00", 20)],
            delivery_date=T0 + timedelta(days=30),
        )

    def test_empty_schedule(self) -> None:
        with pytest.raises(MilestoneScheduleError, match="At least one"):
            validate_milestone_schedule(Decimal("100.00"), [])

    def test_amounts_must_sum_to_total(self) -> None:
        with pytest.raises(MilestoneScheduleError, match="sum to 240.00"):
            validate_milestone_schedule(
                Decimal("250.00"), [plan("100.00", 10), plan("140.00", 20)]
            )

    def test_amounts_must_be_positive(self) -> None:
        with pytest.raises(MilestoneScheduleError, match="must be positive"):
            validate_milestone_schedule(
                Decimal("100.00"), [plan("0.00", 10), plan("100.00", 20)]
            )

    def test_due_dates_strictly_increasing(self) -> None:
        with pytest.raises(MilestoneScheduleError, match="due after milestone 0"):
            validate_milestone_schedule(
                Decimal("200.00"), [plan("100.00", 10), plan("100.00", 10)]
            )

    def test_due_date_after_delivery_date(self) -> None:
        with pytest.raises(MilestoneScheduleError, match="delivery date"):
            validate_milestone_schedule(
                Decimal("100.00"),
                [plan("100.00", 40)],
                delivery_date=T0 + timedelta(days=30),
            )

    def test_negative_review_window(self) -> None:
        with pytest.raises(MilestoneScheduleError, match="review window"):
            validate_milestone_schedule(
                Decimal("100.00"), [plan("100.00", 10, review_window_days=-1)]
            )

    def test_negative_revision_limit(self) -> None:
        with pytest.raises(MilestoneScheduleError, match="revision limit"):
            validate_milestone_schedule(
                Decimal("100.00"), [plan("100.00", 10, revision_limit=-1)]
            )
