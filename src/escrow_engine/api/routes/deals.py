"""Deal REST API routes.

Routes:
    POST   /api/v1/deals                         Create a deal (optionally with milestones)
    GET    /api/v1/deals/{id}                    Deal detail with milestones
    GET    /api/v1/deals/{id}/transitions        Statuses the caller may move the deal to
    POST   /api/v1/deals/{id}/fund               Record the payer's payment
    POST   /api/v1/deals/{id}/ship               Payee ships a physical good
    POST   /api/v1/deals/{id}/proof              Payee submits proof of delivery
    POST   /api/v1/deals/{id}/review             Payer starts reviewing the proof
    POST   /api/v1/deals/{id}/confirm-delivery   Arrival confirmed, grace period starts
    POST   /api/v1/deals/{id}/cancel             Cancel before delivery
    GET    /api/v1/deals/{id}/eligibility        Release eligibility check
    POST   /api/v1/deals/{id}/release            Release the whole deal to the payee
    GET    /api/v1/deals/{id}/balance            Custody balance from the ledger
    GET    /api/v1/deals/{id}/ledger             Ledger entries
    GET    /api/v1/deals/{id}/events             Audit trail
    GET    /api/v1/deals/{id}/payouts            Payouts of the deal

All mutating routes take the caller from the X-Actor-Id / X-Actor-Role headers.
"""

from __future__ import annotations

import dataclasses
import uuid
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends

from escrow_engine.api.deps import (
    get_actor,
    get_deal_service,
    get_payout_service,
    get_release_service,
)
from escrow_engine.domain.enums import ActorRole
from escrow_engine.domain.milestones import MilestonePlan, next_unreleased_milestone
from escrow_engine.domain.results import ReleaseContext, TransitionContext
from escrow_engine.domain.state_machine import allowed_targets
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.deals import (
    AllowedTransitionsResponse,
    BalanceResponse,
    CreateDealRequest,
    DealDetailResponse,
    DealEventResponse,
    EligibilityResponse,
    FundDealRequest,
    LedgerEntryResponse,
    ReasonRequest,
    ReleaseRequest,
    ReleaseResponse,
    ShipDealRequest,
)
from escrow_engine.schemas.payouts import PayoutResponse
from escrow_engine.services.deal_service import DealService
from escrow_engine.services.payout_service import PayoutService
from escrow_engine.services.release_service import ReleaseService

if TYPE_CHECKING:
    from escrow_engine.infrastructure.database.orm_models import Deal

router = APIRouter(prefix="/api/v1/deals", tags=["Deals"])
logger = get_logger(__name__)


def _detail(deal: Deal) -> DealDetailResponse:
    response = DealDetailResponse.model_validate(deal)
    if deal.allows_partial_release:
        response.active_milestone_index = next_unreleased_milestone(deal.milestones)
    return response


def _with_reason(context: TransitionContext, body: ReasonRequest | None) -> TransitionContext:
    if body is None or body.reason is None:
        return context
    return dataclasses.replace(context, reason=body.reason)


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=DealDetailResponse,
    status_code=201,
    summary="Create a new deal",
)
async def create_deal(
    request: CreateDealRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    """Create a deal in AWAITING_PAYMENT, with its milestone schedule if given."""
    plans = [
        MilestonePlan(
            title=m.title,
            amount=m.amount,
            due_date=m.due_date,
            review_window_days=m.review_window_days,
            revision_limit=m.revision_limit,
            auto_approve=m.auto_approve,
        )
        for m in request.milestones
    ]
    deal = await svc.create_deal(
        payer_id=request.payer_id,
        payee_id=request.payee_id,
        total_amount=request.total_amount,
        currency=request.currency,
        category=request.category,
        context=actor,
        title=request.title,
        delivery_date=request.delivery_date,
        milestones=plans or None,
    )
    return _detail(deal)


@router.get(
    "/{deal_id}",
    response_model=DealDetailResponse,
    summary="Get deal details",
)
async def get_deal(
    deal_id: uuid.UUID,
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    return _detail(await svc.get_deal(deal_id))


@router.get(
    "/{deal_id}/transitions",
    response_model=AllowedTransitionsResponse,
    summary="List the statuses the caller may move the deal to",
)
async def get_allowed_transitions(
    deal_id: uuid.UUID,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> AllowedTransitionsResponse:
    deal = await svc.get_deal(deal_id)
    return AllowedTransitionsResponse(
        deal_id=deal.id,
        status=deal.status,
        actor_role=actor.actor_role.value,
        allowed_targets=[s.value for s in allowed_targets(deal.status, actor.actor_role)],
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/{deal_id}/fund", response_model=DealDetailResponse, summary="Record payment")
async def fund_deal(
    deal_id: uuid.UUID,
    request: FundDealRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    deal = await svc.fund_deal(deal_id, actor, payment_ref=request.payment_ref)
    return _detail(deal)


@router.post("/{deal_id}/ship", response_model=DealDetailResponse, summary="Mark shipped")
async def ship_deal(
    deal_id: uuid.UUID,
    request: ShipDealRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    deal = await svc.mark_shipped(deal_id, actor, tracking_number=request.tracking_number)
    return _detail(deal)


@router.post("/{deal_id}/proof", response_model=DealDetailResponse, summary="Submit proof")
async def submit_proof(
    deal_id: uuid.UUID,
    request: ReasonRequest | None = None,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    deal = await svc.submit_proof(deal_id, _with_reason(actor, request))
    return _detail(deal)


@router.post("/{deal_id}/review", response_model=DealDetailResponse, summary="Start review")
async def start_review(
    deal_id: uuid.UUID,
    request: ReasonRequest | None = None,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    deal = await svc.start_review(deal_id, _with_reason(actor, request))
    return _detail(deal)


@router.post(
    "/{deal_id}/confirm-delivery",
    response_model=DealDetailResponse,
    summary="Confirm delivery",
)
async def confirm_delivery(
    deal_id: uuid.UUID,
    request: ReasonRequest | None = None,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    deal = await svc.confirm_delivery(deal_id, _with_reason(actor, request))
    return _detail(deal)


@router.post("/{deal_id}/cancel", response_model=DealDetailResponse, summary="Cancel the deal")
async def cancel_deal(
    deal_id: uuid.UUID,
    request: ReasonRequest | None = None,
    actor: TransitionContext = Depends(get_actor),
    svc: DealService = Depends(get_deal_service),
) -> DealDetailResponse:
    """Cancel before delivery. Rolls back any provisional payee credit and refunds custody."""
    deal = await svc.cancel_deal(deal_id, _with_reason(actor, request))
    return _detail(deal)


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


@router.get(
    "/{deal_id}/eligibility",
    response_model=EligibilityResponse,
    summary="Check whether the deal (or a milestone) can be released now",
)
async def get_eligibility(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID | None = None,
    role: ActorRole = ActorRole.SYSTEM,
    automatic: bool = False,
    svc: ReleaseService = Depends(get_release_service),
) -> EligibilityResponse:
    eligibility = await svc.compute_eligibility(
        deal_id, milestone_id, actor_role=role, automatic=automatic
    )
    return EligibilityResponse(
        deal_id=deal_id,
        milestone_id=milestone_id,
        eligible=eligibility.eligible,
        reason=eligibility.reason,
        dispute_id=eligibility.dispute_id,
    )


@router.post(
    "/{deal_id}/release",
    response_model=ReleaseResponse,
    summary="Release a deal without milestones to the payee",
)
async def release_deal(
    deal_id: uuid.UUID,
    request: ReleaseRequest,
    actor: TransitionContext = Depends(get_actor),
    svc: ReleaseService = Depends(get_release_service),
) -> ReleaseResponse:
    """Exactly-once release. Repeating a call with the same idempotency key is a no-op."""
    context = ReleaseContext(
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        expected_status=request.expected_status,
        request_meta=actor.request_meta,
        idempotency_key=request.idempotency_key,
    )
    result = await svc.release(deal_id, None, context)
    return ReleaseResponse.model_validate(result.to_dict())


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


@router.get("/{deal_id}/balance", response_model=BalanceResponse, summary="Custody balance")
async def get_balance(
    deal_id: uuid.UUID,
    svc: DealService = Depends(get_deal_service),
) -> BalanceResponse:
    await svc.get_deal(deal_id)
    balance = await svc.get_balance(deal_id)
    return BalanceResponse.model_validate(balance.to_dict())


@router.get(
    "/{deal_id}/ledger",
    response_model=list[LedgerEntryResponse],
    summary="Ledger entries of the deal",
)
async def get_ledger(
    deal_id: uuid.UUID,
    svc: DealService = Depends(get_deal_service),
) -> list[LedgerEntryResponse]:
    entries = await svc.get_ledger(deal_id)
    return [LedgerEntryResponse.model_validate(e) for e in entries]


@router.get(
    "/{deal_id}/events",
    response_model=list[DealEventResponse],
    summary="Get the audit trail",
)
async def get_events(
    deal_id: uuid.UUID,
    svc: DealService = Depends(get_deal_service),
) -> list[DealEventResponse]:
    events = await svc.get_events(deal_id)
    return [DealEventResponse.model_validate(e) for e in events]


@router.get(
    "/{deal_id}/payouts",
    response_model=list[PayoutResponse],
    summary="Payouts issued for the deal",
)
async def get_payouts(
    deal_id: uuid.UUID,
    deals: DealService = Depends(get_deal_service),
    payouts: PayoutService = Depends(get_payout_service),
) -> list[PayoutResponse]:
    await deals.get_deal(deal_id)
    return [PayoutResponse.model_validate(p) for p in await payouts.list_for_deal(deal_id)]
