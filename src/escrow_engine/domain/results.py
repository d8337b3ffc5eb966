"""Value objects passed between the engine's services.

All are frozen dataclasses with a ``to_dict()`` for API responses and
event payloads.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from escrow_engine.domain.enums import ActorRole, DealStatus


@dataclass(frozen=True)
class FreezeStatus:
    """Answer of the dispute freeze guard.

    Attributes:
        frozen: True if money movement must be blocked.
        dispute_id: The active dispute causing the freeze, if known.
        reason: "dispute_active" or "lookup_failed".
    """

    frozen: bool
    dispute_id: uuid.UUID | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "frozen": self.frozen,
            "dispute_id": str(self.dispute_id) if self.dispute_id else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str | None = None
    dispute_id: uuid.UUID | None = None

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "dispute_id": str(self.dispute_id) if self.dispute_id else None,
        }


@dataclass(frozen=True)
class CustodyBalance:
    """Balance of one deal, reconstructed from its ledger entries."""

    funded: Decimal
    released: Decimal
    refunded: Decimal
    fees: Decimal
    currency: str
    clawed_back: Decimal = Decimal("0.00")

    @property
    def custody(self) -> Decimal:
        return self.funded - self.released - self.refunded

    def to_dict(self) -> dict:
        return {
            "funded": format(self.funded, "f"),
            "released": format(self.released, "f"),
            "refunded": format(self.refunded, "f"),
            "fees": format(self.fees, "f"),
            "custody": format(self.custody, "f"),
            "clawed_back": format(self.clawed_back, "f"),
            "currency": self.currency,
        }


@dataclass(frozen=True)
class TransitionContext:
    """Who is moving a deal, and what they believed its status to be.

    Attributes:
        actor_id: Identifier of the acting user or process.
        actor_role: Role the actor holds on this deal.
        reason: Free-text reason recorded in the event log.
        expected_status: Status the caller observed when it computed
            eligibility. A mismatch under the lock raises
            ConcurrentModificationError.
        request_meta: Request metadata (ip, user agent, request id) for audit.
    """

    actor_id: str
    actor_role: ActorRole
    reason: str | None = None
    expected_status: DealStatus | None = None
    request_meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReleaseContext(TransitionContext):
    idempotency_key: str | None = None


@dataclass(frozen=True)
class ReleaseResult:
    deal_id: uuid.UUID
    milestone_id: uuid.UUID | None
    ledger_entry_id: uuid.UUID
    gross: Decimal
    fee: Decimal
    net: Decimal
    deal_status: DealStatus
    payout_id: uuid.UUID | None = None
    payout_status: str | None = None
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "deal_id": str(self.deal_id),
            "milestone_id": str(self.milestone_id) if self.milestone_id else None,
            "ledger_entry_id": str(self.ledger_entry_id),
            "gross": format(self.gross, "f"),
            "fee": format(self.fee, "f"),
            "net": format(self.net, "f"),
            "deal_status": str(self.deal_status),
            "payout_id": str(self.payout_id) if self.payout_id else None,
            "payout_status": self.payout_status,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class ClawbackResult:
    """Money taken back from a payee after a release."""

    deal_id: uuid.UUID
    ledger_entry_id: uuid.UUID
    entry_type: str
    amount: Decimal
    payee_id: str
    payee_available_balance: Decimal
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "deal_id": str(self.deal_id),
            "ledger_entry_id": str(self.ledger_entry_id),
            "entry_type": self.entry_type,
            "amount": format(self.amount, "f"),
            "payee_id": self.payee_id,
            "payee_available_balance": format(self.payee_available_balance, "f"),
            "replayed": self.replayed,
        }


@dataclass
class SweepItemResult:
    deal_id: str
    milestone_id: str | None
    outcome: str
    detail: str | None = None

    def to_dict(self) -> dict:
        result = {"dealId": self.deal_id, "outcome": self.outcome}
        if self.milestone_id:
            result["milestoneId"] = self.milestone_id
        if self.detail:
            result["detail"] = self.detail
        return result


@dataclass
class SweepSummary:
    """Outcome counters for one scheduler phase."""

    processed: int = 0
    approved: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[SweepItemResult] = field(default_factory=list)

    def record(self, item: SweepItemResult) -> None:
        self.processed += 1
        if item.outcome in ("released", "issued"):
            self.approved += 1
        elif item.outcome == "skipped":
            self.skipped += 1
        elif item.outcome == "error":
            self.failed += 1
        self.results.append(item)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "approved": self.approved,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [item.to_dict() for item in self.results],
        }
