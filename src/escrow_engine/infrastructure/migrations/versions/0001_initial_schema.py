"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-17 00:00:00+00:00
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

UUID = postgresql.UUID(as_uuid=True)
JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
Money = sa.Numeric(18, 2)
Timestamp = sa.DateTime(timezone=True)

DEAL_STATUSES = (
    "AWAITING_PAYMENT",
    "FUNDED",
    "AWAITING_SHIPMENT",
    "IN_TRANSIT",
    "PROOF_SUBMITTED",
    "UNDER_REVIEW",
    "DELIVERED_PENDING_RELEASE",
    "DISPUTED",
    "RESOLVED",
    "RELEASED",
    "REFUNDED",
    "CANCELED",
)
DEAL_CATEGORIES = ("PHYSICAL_GOOD", "DIGITAL_GOOD", "SERVICE", "TICKET")
MILESTONE_STATUSES = ("PENDING", "DELIVERED", "IN_REVISION", "RELEASED", "DISPUTED", "REFUNDED")
DISPUTE_STATUSES = (
    "OPEN",
    "NEGOTIATION",
    "ADMIN_REVIEW",
    "NEEDS_INFO",
    "RESOLVED_PAYER",
    "RESOLVED_PAYEE",
    "REJECTED",
)
LEDGER_TYPES = ("FUND", "RELEASE_TO_PAYEE", "REFUND_TO_PAYER", "SPLIT_RELEASE", "FEE")
PAYOUT_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "FAILED")


def _in_list(column: str, values: Sequence[str]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def upgrade() -> None:
    op.create_table(
        "deals",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("payee_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("total_amount", Money, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("allows_partial_release", sa.Boolean(), nullable=False),
        sa.Column("delivery_date", Timestamp, nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("payment_ref", sa.String(128), nullable=True),
        sa.Column("provisional_credit", Money, nullable=False),
        sa.Column("auto_release_at", Timestamp, nullable=True),
        sa.Column("created_at", Timestamp, nullable=False),
        sa.Column("funded_at", Timestamp, nullable=True),
        sa.Column("released_at", Timestamp, nullable=True),
        sa.Column("updated_at", Timestamp, nullable=False),
        sa.CheckConstraint(_in_list("status", DEAL_STATUSES), name="ck_deal_valid_status"),
        sa.CheckConstraint(_in_list("category", DEAL_CATEGORIES), name="ck_deal_valid_category"),
        sa.CheckConstraint("total_amount > 0", name="ck_deal_positive_amount"),
        sa.CheckConstraint("provisional_credit >= 0", name="ck_deal_provisional_credit"),
    )
    op.create_index("idx_deal_status", "deals", ["status"])
    op.create_index("idx_deal_payer", "deals", ["payer_id"])
    op.create_index("idx_deal_payee", "deals", ["payee_id"])
    op.create_index("idx_deal_auto_release_at", "deals", ["auto_release_at"])

    op.create_table(
        "milestones",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("deal_id", UUID, sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("amount", Money, nullable=False),
        sa.Column("due_date", Timestamp, nullable=False),
        sa.Column("review_window_days", sa.Integer(), nullable=False),
        sa.Column("revision_limit", sa.Integer(), nullable=False),
        sa.Column("auto_approve", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("delivered_at", Timestamp, nullable=True),
        sa.Column("released_at", Timestamp, nullable=True),
        sa.Column("created_at", Timestamp, nullable=False),
        sa.Column("updated_at", Timestamp, nullable=False),
        sa.UniqueConstraint("deal_id", "index", name="uq_milestone_deal_index"),
        sa.CheckConstraint(
            _in_list("status", MILESTONE_STATUSES), name="ck_milestone_valid_status"
        ),
        sa.CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        sa.CheckConstraint("revision_limit >= 0", name="ck_milestone_revision_limit"),
        sa.CheckConstraint("review_window_days >= 0", name="ck_milestone_review_window"),
    )
    op.create_index("idx_milestone_status", "milestones", ["status"])

    op.create_table(
        "milestone_deliveries",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "milestone_id",
            UUID,
            sa.ForeignKey("milestones.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("deal_id", UUID, sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("submitted_by", sa.String(64), nullable=False),
        sa.Column("asset_ids", JSON, nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("submitted_at", Timestamp, nullable=False),
    )
    op.create_index(
        "idx_delivery_milestone", "milestone_deliveries", ["milestone_id", "submitted_at"]
    )

    op.create_table(
        "milestone_revisions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "milestone_id",
            UUID,
            sa.ForeignKey("milestones.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("deal_id", UUID, sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("requested_by", sa.String(64), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("created_at", Timestamp, nullable=False),
    )
    op.create_index(
        "idx_revision_milestone", "milestone_revisions", ["milestone_id", "created_at"]
    )

    op.create_table(
        "disputes",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("deal_id", UUID, sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "milestone_id",
            UUID,
            sa.ForeignKey("milestones.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("opened_by", sa.String(64), nullable=False),
        sa.Column("opener_role", sa.String(10), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=True),
        sa.Column("payee_amount", Money, nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(64), nullable=True),
        sa.Column("resolved_at", Timestamp, nullable=True),
        sa.Column("created_at", Timestamp, nullable=False),
        sa.Column("updated_at", Timestamp, nullable=False),
        sa.CheckConstraint(_in_list("status", DISPUTE_STATUSES), name="ck_dispute_valid_status"),
    )
    op.create_index("idx_dispute_deal_status", "disputes", ["deal_id", "status"])

    op.create_table(
        "ledger_transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("deal_id", UUID, sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "milestone_id",
            UUID,
            sa.ForeignKey("milestones.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", Money, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("idempotency_key", sa.String(200), nullable=True, unique=True),
        sa.Column("metadata", JSON, nullable=True),
        sa.Column("created_at", Timestamp, nullable=False),
        sa.CheckConstraint(_in_list("type", LEDGER_TYPES), name="ck_ledger_valid_type"),
        sa.CheckConstraint("amount > 0", name="ck_ledger_positive_amount"),
    )
    op.create_index("idx_ledger_deal", "ledger_transactions", ["deal_id", "created_at"])
    op.create_index("idx_ledger_milestone", "ledger_transactions", ["milestone_id"])

    op.create_table(
        "payouts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("deal_id", UUID, sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "milestone_id",
            UUID,
            sa.ForeignKey("milestones.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column(
            "ledger_transaction_id",
            UUID,
            sa.ForeignKey("ledger_transactions.id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        sa.Column("payee_id", sa.String(64), nullable=False),
        sa.Column("destination_account_id", sa.String(128), nullable=True),
        sa.Column("amount", Money, nullable=False),
        sa.Column("gross_amount", Money, nullable=False),
        sa.Column("fee", Money, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payout_ref", sa.String(128), nullable=True, unique=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("failure_code", sa.String(40), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("retryable", sa.Boolean(), nullable=False),
        sa.Column("created_at", Timestamp, nullable=False),
        sa.Column("updated_at", Timestamp, nullable=False),
        sa.Column("completed_at", Timestamp, nullable=True),
        sa.CheckConstraint(_in_list("status", PAYOUT_STATUSES), name="ck_payout_valid_status"),
        sa.CheckConstraint("amount >= 0", name="ck_payout_non_negative_amount"),
    )
    op.create_index("idx_payout_status", "payouts", ["status"])
    op.create_index("idx_payout_deal", "payouts", ["deal_id"])

    op.create_table(
        "payee_accounts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False, unique=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("destination_account_id", sa.String(128), nullable=True),
        sa.Column("pending_balance", Money, nullable=False),
        sa.Column("available_balance", Money, nullable=False),
        sa.Column("created_at", Timestamp, nullable=False),
        sa.Column("updated_at", Timestamp, nullable=False),
        sa.CheckConstraint("pending_balance >= 0", name="ck_payee_pending_non_negative"),
        sa.CheckConstraint("available_balance >= 0", name="ck_payee_available_non_negative"),
    )

    op.create_table(
        "deal_events",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("deal_id", UUID, sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("actor_type", sa.String(10), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(30), nullable=True),
        sa.Column("new_status", sa.String(30), nullable=True),
        sa.Column("payload", JSON, nullable=True),
        sa.Column("request_meta", JSON, nullable=True),
        sa.Column("created_at", Timestamp, nullable=False),
    )
    op.create_index("idx_event_deal", "deal_events", ["deal_id", "created_at"])
    op.create_index("idx_event_type", "deal_events", ["event_type"])


def downgrade() -> None:
    op.drop_table("deal_events")
    op.drop_table("payee_accounts")
    op.drop_table("payouts")
    op.drop_table("ledger_transactions")
    op.drop_table("disputes")
    op.drop_table("milestone_revisions")
    op.drop_table("milestone_deliveries")
    op.drop_table("milestones")
    op.drop_table("deals")
