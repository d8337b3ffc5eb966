"""SQLAlchemy 2.0 ORM models for the escrow engine.

Tables:
    1. deals                 — Escrow transactions between a payer and a payee.
    2. milestones            — Ordered partial-release units of a deal.
    3. milestone_deliveries  — Append-only delivery submissions.
    4. milestone_revisions   — Append-only revision requests.
    5. disputes              — Claims that freeze money movement while active.
    6. ledger_transactions   — Append-only fund-movement log (custody source of truth).
    7. payouts               — Off-platform transfer instructions.
    8. payee_accounts        — Payee wallet per currency and payout destination.
    9. deal_events           — Append-only audit log.

Design decisions:
    - UUIDs as primary keys.
    - Numeric(18, 2) for money; never floats.
    - Timestamps are timezone-aware UTC, normalised on load.
    - JSON columns (JSONB on PostgreSQL) for payloads and asset references.
    - CHECK constraints on status columns so invalid values never persist.
    - deals.version is the optimistic-concurrency counter bumped by every
      status write.
    - ledger_transactions, milestone_deliveries, milestone_revisions and
      deal_events are append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from escrow_engine.domain.enums import (
    DealCategory,
    DealStatus,
    DisputeStatus,
    LedgerEntryType,
    MilestoneStatus,
    PayoutStatus,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(18, 2)


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always comes back in UTC.

    Backends without timezone support (SQLite) return naive values; those
    are stored as UTC and re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_list(column: str, values) -> str:  # noqa: ANN001
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. deals
# ---------------------------------------------------------------------------
class Deal(Base):
    """An escrow transaction between a payer and a payee."""

    __tablename__ = "deals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # --- Participants ---
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Terms ---
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="Gross amount the payer escrows",
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Single settlement currency (ISO 4217)",
    )
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    allows_partial_release: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="True for milestone-based deals",
    )
    delivery_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # --- Status (state-machine guarded) ---
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=DealStatus.AWAITING_PAYMENT.value,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Bumped by every status write; optimistic-concurrency guard",
    )

    # --- Funding / settlement ---
    payment_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Payment collaborator reference of the funding charge",
    )
    provisional_credit: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0"),
        comment="Amount credited to the payee's pending balance at funding",
    )
    auto_release_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Deal-level grace deadline (non-milestone deals)",
    )

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    funded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    # --- Relationships ---
    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone",
        back_populates="deal",
        order_by="Milestone.index.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(_in_list("status", DealStatus), name="ck_deal_valid_status"),
        CheckConstraint(_in_list("category", DealCategory), name="ck_deal_valid_category"),
        CheckConstraint("total_amount > 0", name="ck_deal_positive_amount"),
        CheckConstraint("provisional_credit >= 0", name="ck_deal_provisional_credit"),
        Index("idx_deal_status", "status"),
        Index("idx_deal_payer", "payer_id"),
        Index("idx_deal_payee", "payee_id"),
        Index("idx_deal_auto_release_at", "auto_release_at"),
    )

    @property
    def is_milestone_based(self) -> bool:
        return self.allows_partial_release

    def __repr__(self) -> str:
        return (
            f"<Deal id={self.id} status={self.status} "
            f"amount={self.total_amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 2. milestones
# ---------------------------------------------------------------------------
class Milestone(Base):
    """A staged deliverable and partial payment within a deal."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    review_window_days: Mapped[int] = mapped_column(Integer, nullable=False)
    revision_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MilestoneStatus.PENDING.value,
    )

    delivered_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Timestamp of the latest delivery; the review window runs from here",
    )
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    deal: Mapped[Deal] = relationship("Deal", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("deal_id", "index", name="uq_milestone_deal_index"),
        CheckConstraint(_in_list("status", MilestoneStatus), name="ck_milestone_valid_status"),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        CheckConstraint("revision_limit >= 0", name="ck_milestone_revision_limit"),
        CheckConstraint("review_window_days >= 0", name="ck_milestone_review_window"),
        Index("idx_milestone_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Milestone deal={self.deal_id} index={self.index} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. milestone_deliveries (append-only)
# ---------------------------------------------------------------------------
class MilestoneDelivery(Base):
    __tablename__ = "milestone_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("milestones.id", ondelete="RESTRICT"),
        nullable=False,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    submitted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_ids: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="References to uploaded deliverables in object storage",
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_delivery_milestone", "milestone_id", "submitted_at"),)


# ---------------------------------------------------------------------------
# 4. milestone_revisions (append-only)
# ---------------------------------------------------------------------------
class MilestoneRevision(Base):
    __tablename__ = "milestone_revisions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("milestones.id", ondelete="RESTRICT"),
        nullable=False,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_revision_milestone", "milestone_id", "created_at"),)


# ---------------------------------------------------------------------------
# 5. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    """A claim against a deal, optionally scoped to one milestone."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("milestones.id", ondelete="RESTRICT"),
        nullable=True,
        comment="Null means the dispute freezes the whole deal",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DisputeStatus.OPEN.value,
    )
    opened_by: Mapped[str] = mapped_column(String(64), nullable=False)
    opener_role: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payee_amount: Mapped[Decimal | None] = mapped_column(
        Money,
        nullable=True,
        comment="Amount released to the payee on a split resolution",
    )
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(_in_list("status", DisputeStatus), name="ck_dispute_valid_status"),
        Index("idx_dispute_deal_status", "deal_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return DisputeStatus(self.status).is_active

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} deal={self.deal_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 6. ledger_transactions (append-only)
# ---------------------------------------------------------------------------
class LedgerTransaction(Base):
    """Immutable fund-movement entry. Custody is the sum over a deal's entries."""

    __tablename__ = "ledger_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("milestones.id", ondelete="RESTRICT"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="COMMITTED")
    idempotency_key: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
        unique=True,
        comment="Caller-supplied key; a replay with identical parameters is a no-op",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint(_in_list("type", LedgerEntryType), name="ck_ledger_valid_type"),
        CheckConstraint("amount > 0", name="ck_ledger_positive_amount"),
        Index("idx_ledger_deal", "deal_id", "created_at"),
        Index("idx_ledger_milestone", "milestone_id"),
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction deal={self.deal_id} {self.type} {self.amount} {self.currency}>"


# ---------------------------------------------------------------------------
# 7. payouts
# ---------------------------------------------------------------------------
class Payout(Base):
    """Off-platform transfer instruction derived from a release entry."""

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("milestones.id", ondelete="RESTRICT"),
        nullable=True,
    )
    ledger_transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ledger_transactions.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False)
    destination_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="Net to payee")
    gross_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PayoutStatus.PENDING.value,
    )
    payout_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        comment="Reference returned by the payment collaborator",
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(_in_list("status", PayoutStatus), name="ck_payout_valid_status"),
        CheckConstraint("amount >= 0", name="ck_payout_non_negative_amount"),
        Index("idx_payout_status", "status"),
        Index("idx_payout_deal", "deal_id"),
    )

    def __repr__(self) -> str:
        return f"<Payout id={self.id} status={self.status} amount={self.amount} {self.currency}>"


# ---------------------------------------------------------------------------
# 8. payee_accounts
# ---------------------------------------------------------------------------
class PayeeAccount(Base):
    """Payee wallet in one currency: provisional (pending) and released (available) balances.

    The available balance goes negative when a chargeback or post-release
    refund claws back more than the payee still holds.
    """

    __tablename__ = "payee_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    destination_account_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Connected payout account at the payment collaborator",
    )
    pending_balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    available_balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_payee_account_user_currency"),
        CheckConstraint("pending_balance >= 0", name="ck_payee_pending_non_negative"),
    )


# ---------------------------------------------------------------------------
# 9. deal_events (append-only audit log)
# ---------------------------------------------------------------------------
class DealEvent(Base):
    """Immutable audit record. Every applied or rejected transition lands here."""

    __tablename__ = "deal_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    actor_type: Mapped[str] = mapped_column(String(10), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    request_meta: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_event_deal", "deal_id", "created_at"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<DealEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (Deal, Milestone, Dispute, Payout, PayeeAccount):
    event.listen(_model, "before_update", _set_updated_at)
