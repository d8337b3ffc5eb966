"""Pydantic API schemas."""

from escrow_engine.schemas.deals import (
    AllowedTransitionsResponse,
    BalanceResponse,
    CreateDealRequest,
    DealDetailResponse,
    DealEventResponse,
    DealResponse,
    DeliverMilestoneRequest,
    EligibilityResponse,
    FundDealRequest,
    LedgerEntryResponse,
    MilestoneDeliveryResponse,
    MilestonePlanRequest,
    MilestoneResponse,
    MilestoneRevisionResponse,
    ReasonRequest,
    ReleaseRequest,
    ReleaseResponse,
    RequestRevisionRequest,
    ShipDealRequest,
)
from escrow_engine.schemas.disputes import (
    DisputeResponse,
    EscalateDisputeRequest,
    FreezeResponse,
    OpenDisputeRequest,
    ResolveDisputeRequest,
)
from escrow_engine.schemas.payouts import (
    ConnectAccountRequest,
    PayeeAccountResponse,
    PayoutCallbackRequest,
    PayoutResponse,
)
from escrow_engine.schemas.system import HealthResponse, SweepResponse

__all__ = [
    "AllowedTransitionsResponse",
    "BalanceResponse",
    "ConnectAccountRequest",
    "CreateDealRequest",
    "DealDetailResponse",
    "DealEventResponse",
    "DealResponse",
    "DeliverMilestoneRequest",
    "DisputeResponse",
    "EligibilityResponse",
    "EscalateDisputeRequest",
    "FreezeResponse",
    "FundDealRequest",
    "HealthResponse",
    "LedgerEntryResponse",
    "MilestoneDeliveryResponse",
    "MilestonePlanRequest",
    "MilestoneResponse",
    "MilestoneRevisionResponse",
    "OpenDisputeRequest",
    "PayeeAccountResponse",
    "PayoutCallbackRequest",
    "PayoutResponse",
    "ReasonRequest",
    "ReleaseRequest",
    "ReleaseResponse",
    "RequestRevisionRequest",
    "ResolveDisputeRequest",
    "ShipDealRequest",
    "SweepResponse",
]
