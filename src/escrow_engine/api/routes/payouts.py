"""Payout and payee account REST API routes.

Routes:
    GET    /api/v1/payouts/{id}              Payout detail
    POST   /api/v1/payouts/{id}/retry        Operator re-issues a failed payout
    POST   /api/v1/payouts/callback          Status report from the payment rail
    GET    /api/v1/payees/{user_id}/accounts Payee wallets, one per currency
    GET    /api/v1/payees/{user_id}/account  One wallet (?currency=USD)
    PUT    /api/v1/payees/{user_id}/account  Connect the payout destination for a currency
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_engine.api.deps import (
    get_app_settings,
    get_db_session_factory,
    get_deal_service,
    get_payout_service,
    get_rail,
)
from escrow_engine.config import Settings
from escrow_engine.schemas.payouts import (
    ConnectAccountRequest,
    PayeeAccountResponse,
    PayoutCallbackRequest,
    PayoutResponse,
)
from escrow_engine.services.deal_service import DealService
from escrow_engine.services.payment_service import PaymentRail
from escrow_engine.services.payout_service import PayoutService, reissue_payout

router = APIRouter(prefix="/api/v1", tags=["Payouts"])


@router.post(
    "/payouts/callback",
    response_model=PayoutResponse,
    summary="Apply a payout status report from the payment rail",
)
async def payout_callback(
    request: PayoutCallbackRequest,
    svc: PayoutService = Depends(get_payout_service),
) -> PayoutResponse:
    payout = await svc.handle_payout_callback(
        request.payout_ref,
        request.status,
        failure_code=request.failure_code,
        failure_message=request.failure_message,
        retryable=request.retryable,
    )
    return PayoutResponse.model_validate(payout)


@router.get("/payouts/{payout_id}", response_model=PayoutResponse, summary="Get a payout")
async def get_payout(
    payout_id: uuid.UUID,
    svc: PayoutService = Depends(get_payout_service),
) -> PayoutResponse:
    return PayoutResponse.model_validate(await svc.get_payout(payout_id))


@router.post(
    "/payouts/{payout_id}/retry",
    response_model=PayoutResponse,
    summary="Re-issue a pending or failed payout",
)
async def retry_payout(
    payout_id: uuid.UUID,
    settings: Settings = Depends(get_app_settings),
    rail: PaymentRail = Depends(get_rail),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> PayoutResponse:
    """Runs in its own transaction; a repeated rail failure answers 502 PAYOUT_FAILED."""
    payout = await reissue_payout(session_factory, payout_id, settings, rail)
    return PayoutResponse.model_validate(payout)


# ---------------------------------------------------------------------------
# Payee accounts
# ---------------------------------------------------------------------------


@router.get(
    "/payees/{user_id}/accounts",
    response_model=list[PayeeAccountResponse],
    summary="List a payee's wallets",
)
async def list_payee_accounts(
    user_id: str,
    svc: DealService = Depends(get_deal_service),
) -> list[PayeeAccountResponse]:
    return [PayeeAccountResponse.model_validate(a) for a in await svc.list_payee_accounts(user_id)]


@router.get(
    "/payees/{user_id}/account",
    response_model=PayeeAccountResponse,
    summary="Get a payee's balances in one currency",
)
async def get_payee_account(
    user_id: str,
    currency: str = Query(default="USD", min_length=3, max_length=3),
    svc: DealService = Depends(get_deal_service),
) -> PayeeAccountResponse:
    account = await svc.get_payee_account(user_id, currency)
    if account is None:
        raise HTTPException(
            status_code=404, detail=f"No {currency.upper()} account for payee {user_id}"
        )
    return PayeeAccountResponse.model_validate(account)


@router.put(
    "/payees/{user_id}/account",
    response_model=PayeeAccountResponse,
    summary="Connect a payee's payout destination",
)
async def connect_payee_account(
    user_id: str,
    request: ConnectAccountRequest,
    svc: DealService = Depends(get_deal_service),
) -> PayeeAccountResponse:
    account = await svc.connect_payee_account(
        user_id, request.destination_account_id, request.currency
    )
    return PayeeAccountResponse.model_validate(account)
