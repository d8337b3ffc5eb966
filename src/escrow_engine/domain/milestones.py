"""Milestone ordering and review-window rules.

Pure functions over milestone-shaped objects. The only milestone that may be
delivered, revised or released is the lowest-indexed one that is not yet
settled (released or refunded).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

from escrow_engine.domain.enums import SETTLED_MILESTONE_STATUSES
from escrow_engine.domain.exceptions import MilestoneScheduleError


class MilestoneLike(Protocol):
    id: object
    index: int
    status: str


@dataclass(frozen=True)
class MilestonePlan:
    """One milestone as requested at deal setup.

    Attributes:
        title: Short description of the deliverable.
        amount: Share of the deal total paid out for this milestone.
        due_date: When the deliverable is due (UTC).
        review_window_days: Days the payer has to review a delivery.
        revision_limit: Revision requests allowed before release.
        auto_approve: Release automatically once the review window lapses.
    """

    title: str
    amount: Decimal
    due_date: datetime
    review_window_days: int | None = None
    revision_limit: int | None = None
    auto_approve: bool = True


def next_unreleased_milestone(
    milestones: Iterable[MilestoneLike],
    released_ids: Iterable[object] = (),
) -> int | None:
    """Return the index of the active milestone, or None when all are settled.

    ``released_ids`` lets callers pass milestone ids that have a release
    ledger entry even if the milestone row has not been updated yet.
    """
    released = set(released_ids)
    pending = [
        m.index
        for m in milestones
        if m.status not in SETTLED_MILESTONE_STATUSES and m.id not in released
    ]
    return min(pending) if pending else None


def review_deadline(delivered_at: datetime, review_window_days: int) -> datetime:
    return delivered_at + timedelta(days=review_window_days)


def review_window_elapsed(
    delivered_at: datetime, review_window_days: int, now: datetime
) -> bool:
    return now > review_deadline(delivered_at, review_window_days)


def revisions_since(
    revision_times: Iterable[datetime], since: datetime | None
) -> int:
    """Count revision requests logged after ``since`` (all of them if None)."""
    return sum(1 for created_at in revision_times if since is None or created_at > since)


def validate_milestone_schedule(
    total_amount: Decimal,
    plans: Sequence[MilestonePlan],
    delivery_date: datetime | None = None,
) -> None:
    """Check a milestone plan once, at deal setup.

    Raises:
        MilestoneScheduleError: If amounts are not positive or do not add up
            to the deal total, if due dates are not strictly increasing, if a
            milestone is due after the deal's delivery date, or if a review
            window or revision limit is negative.
    """
    if not plans:
        raise MilestoneScheduleError("At least one milestone is required")

    total = sum((plan.amount for plan in plans), Decimal(0))
    if total != total_amount:
        raise MilestoneScheduleError(
            f"Milestone amounts sum to {total}, deal total is {total_amount}"
        )

    previous_due: datetime | None = None
    for index, plan in enumerate(plans):
        if plan.amount <= 0:
            raise MilestoneScheduleError(f"Milestone {index} amount must be positive")
        if previous_due is not None and plan.due_date <= previous_due:
            raise MilestoneScheduleError(
                f"Milestone {index} must be due after milestone {index - 1}"
            )
        if delivery_date is not None and plan.due_date > delivery_date:
            raise MilestoneScheduleError(
                f"Milestone {index} is due after the deal delivery date"
            )
        if plan.review_window_days is not None and plan.review_window_days < 0:
            raise MilestoneScheduleError(f"Milestone {index} review window is negative")
        if plan.revision_limit is not None and plan.revision_limit < 0:
            raise MilestoneScheduleError(f"Milestone {index} revision limit is negative")
        previous_due = plan.due_date
