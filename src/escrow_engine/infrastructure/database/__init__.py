"""Database infrastructure — engine, ORM models, and repositories."""

from escrow_engine.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
    session_scope,
)
from escrow_engine.infrastructure.database.orm_models import (
    Base,
    Deal,
    DealEvent,
    Dispute,
    LedgerTransaction,
    Milestone,
    MilestoneDelivery,
    MilestoneRevision,
    PayeeAccount,
    Payout,
)
from escrow_engine.infrastructure.database.repositories import (
    DealRepository,
    DisputeRepository,
    EventRepository,
    LedgerRepository,
    MilestoneRepository,
    PayeeAccountRepository,
    PayoutRepository,
)

__all__ = [
    "Base",
    "Deal",
    "DealEvent",
    "Dispute",
    "LedgerTransaction",
    "Milestone",
    "MilestoneDelivery",
    "MilestoneRevision",
    "PayeeAccount",
    "Payout",
    "DealRepository",
    "DisputeRepository",
    "EventRepository",
    "LedgerRepository",
    "MilestoneRepository",
    "PayeeAccountRepository",
    "PayoutRepository",
    "get_async_session",
    "get_session_factory",
    "session_scope",
    "init_db",
    "close_db",
]
