"""Pydantic schemas for deals, milestones, ledger and releases.

These schemas define the request/response shapes for the REST API. They
are separate from the ORM models to keep the API and database layers
apart. Money is Decimal end to end and serialises as a string.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves field types at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from escrow_engine.domain.enums import DealCategory, DealStatus

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class MilestonePlanRequest(BaseModel):
    """One milestone of a deal's schedule."""

    title: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    due_date: datetime
    review_window_days: int | None = Field(
        default=None,
        ge=0,
        description="Days the payer has to review a delivery (defaults from settings)",
    )
    revision_limit: int | None = Field(
        default=None,
        ge=0,
        description="Revision requests allowed (defaults from settings)",
    )
    auto_approve: bool = True


class CreateDealRequest(BaseModel):
    """Request body for creating a new deal."""

    payer_id: str = Field(..., min_length=1, max_length=64)
    payee_id: str = Field(..., min_length=1, max_length=64)
    title: str | None = Field(default=None, max_length=200)
    total_amount: Decimal = Field(..., gt=0, decimal_places=2, examples=["250.00"])
    currency: str = Field(..., min_length=3, max_length=3, examples=["USD"])
    category: DealCategory
    delivery_date: datetime | None = None
    milestones: list[MilestonePlanRequest] = Field(
        default_factory=list,
        description="Milestone schedule; amounts must add up to total_amount",
    )


class FundDealRequest(BaseModel):
    payment_ref: str | None = Field(
        default=None,
        max_length=128,
        description="Payment collaborator reference of the funding charge",
    )


class ShipDealRequest(BaseModel):
    tracking_number: str | None = Field(default=None, max_length=128)


class ReasonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ReleaseRequest(BaseModel):
    """Request body for a release (deal-level or milestone approval)."""

    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Repeated calls with the same key have no further effect",
    )
    expected_status: DealStatus | None = Field(
        default=None,
        description="Deal status the caller saw; a mismatch is a 409 CONCURRENT_MODIFICATION",
    )


class DeliverMilestoneRequest(BaseModel):
    asset_ids: list[str] = Field(default_factory=list, max_length=100)
    note: str | None = Field(default=None, max_length=5000)


class RequestRevisionRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=5000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    index: int
    title: str
    amount: Decimal
    due_date: datetime
    review_window_days: int
    revision_limit: int
    auto_approve: bool
    status: str
    delivered_at: datetime | None
    released_at: datetime | None


class DealResponse(BaseModel):
    """Response schema for a deal."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    payer_id: str
    payee_id: str
    title: str | None
    total_amount: Decimal
    currency: str
    category: str
    allows_partial_release: bool
    delivery_date: datetime | None
    status: str
    version: int
    provisional_credit: Decimal
    auto_release_at: datetime | None
    created_at: datetime
    funded_at: datetime | None
    released_at: datetime | None


class DealDetailResponse(DealResponse):
    milestones: list[MilestoneResponse] = Field(default_factory=list)
    active_milestone_index: int | None = None


class MilestoneDeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    milestone_id: uuid.UUID
    deal_id: uuid.UUID
    submitted_by: str
    asset_ids: list[str]
    note: str | None
    submitted_at: datetime


class MilestoneRevisionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    milestone_id: uuid.UUID
    deal_id: uuid.UUID
    requested_by: str
    note: str
    created_at: datetime


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    milestone_id: uuid.UUID | None
    type: str
    amount: Decimal
    currency: str
    status: str
    idempotency_key: str | None
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class BalanceResponse(BaseModel):
    funded: Decimal
    released: Decimal
    refunded: Decimal
    fees: Decimal
    custody: Decimal
    clawed_back: Decimal
    currency: str


class DealEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    actor_type: str
    actor_id: str
    event_type: str
    old_status: str | None
    new_status: str | None
    payload: dict | None
    created_at: datetime


class EligibilityResponse(BaseModel):
    deal_id: uuid.UUID
    milestone_id: uuid.UUID | None = None
    eligible: bool
    reason: str | None = None
    dispute_id: uuid.UUID | None = None


class ReleaseResponse(BaseModel):
    deal_id: uuid.UUID
    milestone_id: uuid.UUID | None
    ledger_entry_id: uuid.UUID
    gross: Decimal
    fee: Decimal
    net: Decimal
    deal_status: str
    payout_id: uuid.UUID | None = None
    payout_status: str | None = None
    replayed: bool = False


class AllowedTransitionsResponse(BaseModel):
    deal_id: uuid.UUID
    status: str
    actor_role: str
    allowed_targets: list[str]
