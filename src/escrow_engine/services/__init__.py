"""Application services — use case orchestration."""

from escrow_engine.services.auto_release import AutoReleaseScheduler
from escrow_engine.services.deal_service import DealService
from escrow_engine.services.dispute_service import DisputeFreezeGuard, DisputeService
from escrow_engine.services.ledger_service import LedgerService
from escrow_engine.services.milestone_service import MilestoneService
from escrow_engine.services.payment_service import PaymentService
from escrow_engine.services.payout_service import PayoutService
from escrow_engine.services.release_service import ReleaseService
from escrow_engine.services.transition_service import TransitionService

__all__ = [
    "AutoReleaseScheduler",
    "DealService",
    "DisputeFreezeGuard",
    "DisputeService",
    "LedgerService",
    "MilestoneService",
    "PaymentService",
    "PayoutService",
    "ReleaseService",
    "TransitionService",
]
