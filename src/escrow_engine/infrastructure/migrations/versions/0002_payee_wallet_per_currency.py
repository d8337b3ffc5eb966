"""payee wallet per currency, post-release clawbacks

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-17 12:00:00+00:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op

revision: str = "0002"
down_revision: str | None = "0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

OLD_LEDGER_TYPES = ("FUND", "RELEASE_TO_PAYEE", "REFUND_TO_PAYER", "SPLIT_RELEASE", "FEE")
LEDGER_TYPES = (*OLD_LEDGER_TYPES, "CHARGEBACK", "POST_RELEASE_REFUND")


def _in_list(column: str, values: Sequence[str]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def upgrade() -> None:
    # One wallet per (payee, currency).
    op.drop_constraint("payee_accounts_user_id_key", "payee_accounts", type_="unique")
    op.create_unique_constraint(
        "uq_payee_account_user_currency", "payee_accounts", ["user_id", "currency"]
    )
    op.create_index("ix_payee_accounts_user_id", "payee_accounts", ["user_id"])

    # Clawbacks may leave a payee owing money.
    op.drop_constraint("ck_payee_available_non_negative", "payee_accounts", type_="check")

    op.drop_constraint("ck_ledger_valid_type", "ledger_transactions", type_="check")
    op.create_check_constraint(
        "ck_ledger_valid_type", "ledger_transactions", _in_list("type", LEDGER_TYPES)
    )


def downgrade() -> None:
    op.drop_constraint("ck_ledger_valid_type", "ledger_transactions", type_="check")
    op.create_check_constraint(
        "ck_ledger_valid_type", "ledger_transactions", _in_list("type", OLD_LEDGER_TYPES)
    )

    op.create_check_constraint(
        "ck_payee_available_non_negative", "payee_accounts", "available_balance >= 0"
    )

    op.drop_index("ix_payee_accounts_user_id", table_name="payee_accounts")
    op.drop_constraint("uq_payee_account_user_currency", "payee_accounts", type_="unique")
    op.create_unique_constraint("payee_accounts_user_id_key", "payee_accounts", ["user_id"])
