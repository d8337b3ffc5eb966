"""Domain layer — pure deal lifecycle rules with no framework dependencies."""

from escrow_engine.domain.enums import (
    ActorRole,
    DealCategory,
    DealStatus,
    DisputeOutcome,
    DisputeStatus,
    EventType,
    LedgerEntryType,
    MilestoneStatus,
    PayoutStatus,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DealNotFoundError,
    EscrowError,
    InvalidTransitionError,
)
from escrow_engine.domain.state_machine import (
    DealStateMachine,
    can_transition,
    validate_transition,
)

__all__ = [
    "ActorRole",
    "DealCategory",
    "DealStatus",
    "DisputeOutcome",
    "DisputeStatus",
    "EventType",
    "LedgerEntryType",
    "MilestoneStatus",
    "PayoutStatus",
    "ConcurrentModificationError",
    "DealNotFoundError",
    "EscrowError",
    "InvalidTransitionError",
    "DealStateMachine",
    "can_transition",
    "validate_transition",
]
