"""Pydantic schemas for payouts and payee accounts."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves field types at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from escrow_engine.domain.enums import PayoutStatus


class PayoutCallbackRequest(BaseModel):
    """Status report pushed by the payment rail."""

    payout_ref: str = Field(..., min_length=1, max_length=128)
    status: PayoutStatus
    failure_code: str | None = Field(default=None, max_length=40)
    failure_message: str | None = Field(default=None, max_length=2000)
    retryable: bool = False


class ConnectAccountRequest(BaseModel):
    destination_account_id: str = Field(..., min_length=1, max_length=128)
    currency: str = Field(..., min_length=3, max_length=3)


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    milestone_id: uuid.UUID | None
    ledger_transaction_id: uuid.UUID
    payee_id: str
    destination_account_id: str | None
    amount: Decimal
    gross_amount: Decimal
    fee: Decimal
    currency: str
    status: str
    payout_ref: str | None
    attempts: int
    failure_code: str | None
    failure_message: str | None
    retryable: bool
    created_at: datetime
    completed_at: datetime | None


class PayeeAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    currency: str
    destination_account_id: str | None
    pending_balance: Decimal
    available_balance: Decimal

