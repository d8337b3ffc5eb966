"""Domain enumerations for the escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class DealStatus(enum.StrEnum):
    """Lifecycle states of a deal (superset across categories).

    Transitions are guarded by DealStateMachine and the role table in
    domain/state_machine.py.
    """

    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    FUNDED = "FUNDED"
    AWAITING_SHIPMENT = "AWAITING_SHIPMENT"
    IN_TRANSIT = "IN_TRANSIT"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    DELIVERED_PENDING_RELEASE = "DELIVERED_PENDING_RELEASE"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_DEAL_STATUSES


TERMINAL_DEAL_STATUSES = frozenset(
    {DealStatus.RELEASED, DealStatus.REFUNDED, DealStatus.CANCELED}
)


class DealCategory(enum.StrEnum):
    """What is being paid for. Drives the funding path and grace periods."""

    PHYSICAL_GOOD = "PHYSICAL_GOOD"
    DIGITAL_GOOD = "DIGITAL_GOOD"
    SERVICE = "SERVICE"
    TICKET = "TICKET"


class ActorRole(enum.StrEnum):
    """Who is acting on a deal."""

    PAYER = "PAYER"
    PAYEE = "PAYEE"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class MilestoneStatus(enum.StrEnum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    IN_REVISION = "IN_REVISION"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


# A settled milestone no longer holds money in custody.
SETTLED_MILESTONE_STATUSES = frozenset(
    {MilestoneStatus.RELEASED, MilestoneStatus.REFUNDED}
)


class DisputeStatus(enum.StrEnum):
    OPEN = "OPEN"
    NEGOTIATION = "NEGOTIATION"
    ADMIN_REVIEW = "ADMIN_REVIEW"
    NEEDS_INFO = "NEEDS_INFO"
    RESOLVED_PAYER = "RESOLVED_PAYER"
    RESOLVED_PAYEE = "RESOLVED_PAYEE"
    REJECTED = "REJECTED"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_DISPUTE_STATUSES


# While a dispute sits in one of these, every release path it covers fails closed.
ACTIVE_DISPUTE_STATUSES = frozenset(
    {
        DisputeStatus.OPEN,
        DisputeStatus.NEGOTIATION,
        DisputeStatus.ADMIN_REVIEW,
        DisputeStatus.NEEDS_INFO,
    }
)


class DisputeOutcome(enum.StrEnum):
    """How an administrator settles a dispute.

    RELEASE and SPLIT close the dispute as RESOLVED_PAYEE, REFUND as
    RESOLVED_PAYER, REJECT as REJECTED (no money moves).
    """

    RELEASE = "RELEASE"
    REFUND = "REFUND"
    SPLIT = "SPLIT"
    REJECT = "REJECT"

    @property
    def dispute_status(self) -> DisputeStatus:
        if self in (DisputeOutcome.RELEASE, DisputeOutcome.SPLIT):
            return DisputeStatus.RESOLVED_PAYEE
        if self is DisputeOutcome.REFUND:
            return DisputeStatus.RESOLVED_PAYER
        return DisputeStatus.REJECTED


class LedgerEntryType(enum.StrEnum):
    """Types of fund-movement entries in the append-only ledger.

    FUND adds to custody; RELEASE_TO_PAYEE, REFUND_TO_PAYER and SPLIT_RELEASE
    take money out of custody. FEE records the platform's cut of a release
    and does not move custody on its own.

    CHARGEBACK and POST_RELEASE_REFUND claw released money back from the
    payee after the fact. Custody is already empty by then, so they only
    debit the payee's wallet.
    """

    FUND = "FUND"
    RELEASE_TO_PAYEE = "RELEASE_TO_PAYEE"
    REFUND_TO_PAYER = "REFUND_TO_PAYER"
    SPLIT_RELEASE = "SPLIT_RELEASE"
    FEE = "FEE"
    CHARGEBACK = "CHARGEBACK"
    POST_RELEASE_REFUND = "POST_RELEASE_REFUND"

    @property
    def is_outflow(self) -> bool:
        return self in CUSTODY_OUTFLOW_TYPES

    @property
    def is_clawback(self) -> bool:
        return self in (LedgerEntryType.CHARGEBACK, LedgerEntryType.POST_RELEASE_REFUND)


CUSTODY_OUTFLOW_TYPES = frozenset(
    {
        LedgerEntryType.RELEASE_TO_PAYEE,
        LedgerEntryType.REFUND_TO_PAYER,
        LedgerEntryType.SPLIT_RELEASE,
    }
)


class LedgerEntryStatus(enum.StrEnum):
    COMMITTED = "COMMITTED"


class PayoutStatus(enum.StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the deal_events table.

    Every applied or rejected status transition produces exactly one
    STATUS_CHANGED or TRANSITION_REJECTED event.
    """

    # Lifecycle events
    DEAL_CREATED = "DEAL_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    TRANSITION_REJECTED = "TRANSITION_REJECTED"

    # Balance events
    PROVISIONAL_CREDIT_APPLIED = "PROVISIONAL_CREDIT_APPLIED"
    PROVISIONAL_CREDIT_ROLLED_BACK = "PROVISIONAL_CREDIT_ROLLED_BACK"

    # Milestone events
    MILESTONE_DELIVERED = "MILESTONE_DELIVERED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    MILESTONE_APPROVED = "MILESTONE_APPROVED"
    MILESTONE_AUTO_APPROVED = "MILESTONE_AUTO_APPROVED"
    MILESTONE_RELEASED = "MILESTONE_RELEASED"
    MILESTONE_REFUNDED = "MILESTONE_REFUNDED"

    # Settlement events
    FUNDS_RELEASED = "FUNDS_RELEASED"
    FUNDS_REFUNDED = "FUNDS_REFUNDED"
    REFUND_RAIL_FAILED = "REFUND_RAIL_FAILED"
    PAYOUT_CREATED = "PAYOUT_CREATED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    PAYOUT_UPDATED = "PAYOUT_UPDATED"
    CHARGEBACK_RECORDED = "CHARGEBACK_RECORDED"
    POST_RELEASE_REFUNDED = "POST_RELEASE_REFUNDED"

    # Dispute events
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_ESCALATED = "DISPUTE_ESCALATED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
