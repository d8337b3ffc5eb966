"""Dispute REST API routes.

Routes:
    POST   /api/v1/deals/{id}/disputes        Open a dispute (freezes money movement)
    GET    /api/v1/deals/{id}/disputes        List disputes of a deal
    GET    /api/v1/deals/{id}/freeze          Freeze guard check
    GET    /api/v1/disputes/{id}              Dispute detail
    POST   /api/v1/disputes/{id}/escalate     Move to NEGOTIATION / ADMIN_REVIEW / NEEDS_INFO
    POST   /api/v1/disputes/{id}/resolve      Admin resolution and settlement
    POST   /api/v1/deals/{id}/chargebacks     Record a chargeback on a settled deal
    POST   /api/v1/deals/{id}/post-release-refunds  Admin refund out of released funds
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from escrow_engine.api.deps import get_actor, get_deal_service, get_dispute_service
from escrow_engine.domain.results import TransitionContext
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.disputes import (
    ChargebackRequest,
    ClawbackResponse,
    DisputeResponse,
    EscalateDisputeRequest,
    FreezeResponse,
    OpenDisputeRequest,
    PostReleaseRefundRequest,
    ResolveDisputeRequest,
)
from escrow_engine.services.deal_service import DealService
from escrow_engine.services.dispute_service import DisputeService

router = APIRouter(prefix="/api/v1", tags=["Disputes"])
logger = get_logger(__name__)


@router.post(
    "/deals/{deal_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    summary="Open a dispute",
)
async def open_dispute(
    deal_id: uuid.UUID,
    request: OpenDisputeRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Open a dispute on the deal, or on its active milestone when ``milestone_id`` is set."""
    dispute = await svc.open_dispute(
        deal_id, actor, request.reason, milestone_id=request.milestone_id
    )
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/deals/{deal_id}/disputes",
    response_model=list[DisputeResponse],
    summary="List disputes of a deal",
)
async def list_disputes(
    deal_id: uuid.UUID,
    deals: DealService = Depends(get_deal_service),
    svc: DisputeService = Depends(get_dispute_service),
) -> list[DisputeResponse]:
    await deals.get_deal(deal_id)
    return [DisputeResponse.model_validate(d) for d in await svc.list_for_deal(deal_id)]


@router.get(
    "/deals/{deal_id}/freeze",
    response_model=FreezeResponse,
    summary="Check whether an active dispute freezes the deal",
)
async def get_freeze(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID | None = None,
    deals: DealService = Depends(get_deal_service),
    svc: DisputeService = Depends(get_dispute_service),
) -> FreezeResponse:
    await deals.get_deal(deal_id)
    freeze = await svc.guard.is_frozen(deal_id, milestone_id)
    return FreezeResponse(
        deal_id=deal_id,
        milestone_id=milestone_id,
        frozen=freeze.frozen,
        dispute_id=freeze.dispute_id,
        reason=freeze.reason,
    )


@router.get("/disputes/{dispute_id}", response_model=DisputeResponse, summary="Get a dispute")
async def get_dispute(
    dispute_id: uuid.UUID,
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    return DisputeResponse.model_validate(await svc.get_dispute(dispute_id))


@router.post(
    "/disputes/{dispute_id}/escalate",
    response_model=DisputeResponse,
    summary="Escalate a dispute",
)
async def escalate_dispute(
    dispute_id: uuid.UUID,
    request: EscalateDisputeRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.escalate_dispute(dispute_id, request.status, actor, note=request.note)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/disputes/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Admin-only. Settles the disputed money according to the outcome."""
    dispute = await svc.resolve_dispute(
        dispute_id,
        request.outcome,
        actor,
        note=request.note,
        payee_amount=request.payee_amount,
    )
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/deals/{deal_id}/chargebacks",
    response_model=ClawbackResponse,
    status_code=201,
    summary="Record a chargeback",
)
async def record_chargeback(
    deal_id: uuid.UUID,
    request: ChargebackRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> ClawbackResponse:
    """System or admin. Debits the payee's wallet; the release itself stands."""
    result = await svc.record_chargeback(
        deal_id, request.amount, actor, request.external_ref, reason=request.reason
    )
    return ClawbackResponse.model_validate(result.to_dict())


@router.post(
    "/deals/{deal_id}/post-release-refunds",
    response_model=ClawbackResponse,
    status_code=201,
    summary="Refund the payer after release",
)
async def refund_after_release(
    deal_id: uuid.UUID,
    request: PostReleaseRefundRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> ClawbackResponse:
    result = await svc.refund_after_release(
        deal_id,
        request.amount,
        actor,
        note=request.note,
        idempotency_key=request.idempotency_key,
    )
    return ClawbackResponse.model_validate(result.to_dict())
