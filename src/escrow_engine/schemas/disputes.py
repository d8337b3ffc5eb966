"""Pydantic schemas for disputes and the freeze guard."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves field types at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from escrow_engine.domain.enums import DisputeOutcome, DisputeStatus


class OpenDisputeRequest(BaseModel):
    """Request body for opening a dispute on a deal or one of its milestones."""

    reason: str = Field(..., min_length=10, max_length=2000)
    milestone_id: uuid.UUID | None = Field(
        default=None,
        description="Scope the dispute to the active milestone",
    )


class EscalateDisputeRequest(BaseModel):
    status: DisputeStatus
    note: str | None = Field(default=None, max_length=2000)


class ResolveDisputeRequest(BaseModel):
    outcome: DisputeOutcome
    note: str | None = Field(default=None, max_length=2000)
    payee_amount: Decimal | None = Field(
        default=None,
        gt=0,
        decimal_places=2,
        description="Amount released to the payee on a SPLIT; the rest is refunded",
    )

    @model_validator(mode="after")
    def _split_needs_amount(self) -> ResolveDisputeRequest:
        if self.outcome is DisputeOutcome.SPLIT and self.payee_amount is None:
            raise ValueError("payee_amount is required for a SPLIT outcome")
        return self


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    milestone_id: uuid.UUID | None
    status: str
    opened_by: str
    opener_role: str
    reason: str
    outcome: str | None
    payee_amount: Decimal | None
    resolution_note: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime


class FreezeResponse(BaseModel):
    deal_id: uuid.UUID
    milestone_id: uuid.UUID | None = None
    frozen: bool
    dispute_id: uuid.UUID | None = None
    reason: str | None = None


class ChargebackRequest(BaseModel):
    """A chargeback reported by the card network for a settled deal."""

    amount: Decimal = Field(..., gt=0, decimal_places=2)
    external_ref: str = Field(..., min_length=1, max_length=255, description="Network case id")
    reason: str | None = Field(default=None, max_length=2000)


class PostReleaseRefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    note: str | None = Field(default=None, max_length=2000)
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Repeated calls with the same key refund only once",
    )


class ClawbackResponse(BaseModel):
    deal_id: uuid.UUID
    ledger_entry_id: uuid.UUID
    entry_type: str
    amount: Decimal
    payee_id: str
    payee_available_balance: Decimal
    replayed: bool
