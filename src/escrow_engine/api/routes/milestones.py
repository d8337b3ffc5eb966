"""Milestone REST API routes.

Routes:
    GET    /api/v1/milestones/{id}              Milestone detail
    GET    /api/v1/milestones/{id}/deliveries   Delivery history
    POST   /api/v1/milestones/{id}/deliveries   Payee delivers the active milestone
    GET    /api/v1/milestones/{id}/revisions    Revision history
    POST   /api/v1/milestones/{id}/revisions    Payer requests a revision
    POST   /api/v1/milestones/{id}/approve      Payer approves and releases the milestone
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from escrow_engine.api.deps import get_actor, get_milestone_service
from escrow_engine.domain.results import ReleaseContext, TransitionContext
from escrow_engine.schemas.deals import (
    DeliverMilestoneRequest,
    MilestoneDeliveryResponse,
    MilestoneResponse,
    MilestoneRevisionResponse,
    ReleaseRequest,
    ReleaseResponse,
    RequestRevisionRequest,
)
from escrow_engine.services.milestone_service import MilestoneService

router = APIRouter(prefix="/api/v1/milestones", tags=["Milestones"])


@router.get("/{milestone_id}", response_model=MilestoneResponse, summary="Get a milestone")
async def get_milestone(
    milestone_id: uuid.UUID,
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    return MilestoneResponse.model_validate(await svc.get_milestone(milestone_id))


# ---------------------------------------------------------------------------
# Deliveries
# ---------------------------------------------------------------------------


@router.get(
    "/{milestone_id}/deliveries",
    response_model=list[MilestoneDeliveryResponse],
    summary="List deliveries",
)
async def list_deliveries(
    milestone_id: uuid.UUID,
    svc: MilestoneService = Depends(get_milestone_service),
) -> list[MilestoneDeliveryResponse]:
    await svc.get_milestone(milestone_id)
    deliveries = await svc.list_deliveries(milestone_id)
    return [MilestoneDeliveryResponse.model_validate(d) for d in deliveries]


@router.post(
    "/{milestone_id}/deliveries",
    response_model=MilestoneDeliveryResponse,
    status_code=201,
    summary="Deliver the active milestone",
)
async def submit_delivery(
    milestone_id: uuid.UUID,
    request: DeliverMilestoneRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneDeliveryResponse:
    """Record a delivery. Redelivering after a revision restarts the review window."""
    delivery = await svc.submit_delivery(
        milestone_id, actor, asset_ids=request.asset_ids, note=request.note
    )
    return MilestoneDeliveryResponse.model_validate(delivery)


# ---------------------------------------------------------------------------
# Revisions
# ---------------------------------------------------------------------------


@router.get(
    "/{milestone_id}/revisions",
    response_model=list[MilestoneRevisionResponse],
    summary="List revision requests",
)
async def list_revisions(
    milestone_id: uuid.UUID,
    svc: MilestoneService = Depends(get_milestone_service),
) -> list[MilestoneRevisionResponse]:
    await svc.get_milestone(milestone_id)
    revisions = await svc.list_revisions(milestone_id)
    return [MilestoneRevisionResponse.model_validate(r) for r in revisions]


@router.post(
    "/{milestone_id}/revisions",
    response_model=MilestoneRevisionResponse,
    status_code=201,
    summary="Request a revision",
)
async def request_revision(
    milestone_id: uuid.UUID,
    request: RequestRevisionRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneRevisionResponse:
    revision = await svc.request_revision(milestone_id, actor, note=request.note)
    return MilestoneRevisionResponse.model_validate(revision)


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


@router.post(
    "/{milestone_id}/approve",
    response_model=ReleaseResponse,
    summary="Approve and release the milestone",
)
async def approve_milestone(
    milestone_id: uuid.UUID,
    request: ReleaseRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> ReleaseResponse:
    context = ReleaseContext(
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        expected_status=request.expected_status,
        request_meta=actor.request_meta,
        idempotency_key=request.idempotency_key,
    )
    result = await svc.approve_milestone(milestone_id, context)
    return ReleaseResponse.model_validate(result.to_dict())
