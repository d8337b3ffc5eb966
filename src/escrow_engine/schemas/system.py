"""Schemas for the health check and the scheduled sweep trigger."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"


class SweepItemResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deal_id: str = Field(alias="dealId")
    milestone_id: str | None = Field(default=None, alias="milestoneId")
    outcome: str
    detail: str | None = None


class AutoReleasePhase(BaseModel):
    processed: int
    results: list[SweepItemResponse] = Field(default_factory=list)


class MilestoneAutoApprovePhase(BaseModel):
    processed: int
    approved: int
    skipped: int


class PayoutPhase(BaseModel):
    processed: int
    issued: int
    failed: int


class SweepResponse(BaseModel):
    """Summary of one sweep run. ``status`` is "skipped" when another run holds the lock."""

    model_config = ConfigDict(populate_by_name=True)

    status: str = "ok"
    auto_release: AutoReleasePhase | None = Field(default=None, alias="autoRelease")
    milestone_auto_approve: MilestoneAutoApprovePhase | None = Field(
        default=None, alias="milestoneAutoApprove"
    )
    payouts: PayoutPhase | None = None
