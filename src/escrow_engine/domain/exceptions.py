"""Domain exceptions for the escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.

Every error carries ``retryable``: True only when the caller can succeed by
retrying with fresh state (a lost optimistic-lock race, a temporary rail
failure).
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    retryable = False

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Lookup Errors ---


class DealNotFoundError(EscrowError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(message=f"Deal not found: {deal_id}", code="DEAL_NOT_FOUND")
        self.deal_id = deal_id


class MilestoneNotFoundError(EscrowError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(
            message=f"Milestone not found: {milestone_id}",
            code="MILESTONE_NOT_FOUND",
        )
        self.milestone_id = milestone_id


class DisputeNotFoundError(EscrowError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute not found: {dispute_id}",
            code="DISPUTE_NOT_FOUND",
        )
        self.dispute_id = dispute_id


class PayoutNotFoundError(EscrowError):
    def __init__(self, payout_ref: str) -> None:
        super().__init__(
            message=f"Payout not found: {payout_ref}",
            code="PAYOUT_NOT_FOUND",
        )
        self.payout_ref = payout_ref


# --- State Machine Errors ---


class InvalidTransitionError(EscrowError):
    """Raised when the transition table forbids a status change.

    Example: AWAITING_PAYMENT -> RELEASED, or a PAYEE trying to cancel
    from AWAITING_SHIPMENT.
    """

    def __init__(self, current_state: str, attempted_state: str, actor_role: str) -> None:
        super().__init__(
            message=(
                f"Invalid transition: {current_state} -> {attempted_state} "
                f"for role {actor_role}"
            ),
            code="INVALID_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.actor_role = actor_role


class ConcurrentModificationError(EscrowError):
    """Raised when the stored deal no longer matches what the caller observed.

    The caller should reload the deal and retry.
    """

    retryable = True

    def __init__(self, deal_id: str, expected: str, actual: str | None = None) -> None:
        detail = f"expected {expected}" + (f", found {actual}" if actual else "")
        super().__init__(
            message=f"Deal {deal_id} was modified concurrently ({detail})",
            code="CONCURRENT_MODIFICATION",
        )
        self.deal_id = deal_id
        self.expected = expected
        self.actual = actual


# --- Dispute Errors ---


class DisputeActiveError(EscrowError):
    """Raised when an active dispute freezes the requested money movement."""

    def __init__(self, deal_id: str, dispute_id: str | None = None) -> None:
        suffix = f" (dispute {dispute_id})" if dispute_id else ""
        super().__init__(
            message=f"Deal {deal_id} is frozen by an active dispute{suffix}",
            code="DISPUTE_ACTIVE",
        )
        self.deal_id = deal_id
        self.dispute_id = dispute_id


class DisputeStateError(EscrowError):
    """Raised when a dispute operation does not fit the dispute's status."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="DISPUTE_STATE_ERROR")


# --- Milestone Protocol Errors ---


class NotActiveMilestoneError(EscrowError):
    def __init__(self, milestone_index: int, active_index: int | None) -> None:
        super().__init__(
            message=(
                f"Milestone {milestone_index} is not the active milestone "
                f"(active: {active_index})"
            ),
            code="NOT_ACTIVE_MILESTONE",
        )
        self.milestone_index = milestone_index
        self.active_index = active_index


class ReviewWindowExpiredError(EscrowError):
    def __init__(self, milestone_id: str, deadline: str) -> None:
        super().__init__(
            message=f"Review window for milestone {milestone_id} closed at {deadline}",
            code="REVIEW_WINDOW_EXPIRED",
        )
        self.milestone_id = milestone_id
        self.deadline = deadline


class RevisionLimitExceededError(EscrowError):
    def __init__(self, milestone_id: str, limit: int) -> None:
        super().__init__(
            message=f"Milestone {milestone_id} reached its revision limit of {limit}",
            code="REVISION_LIMIT_EXCEEDED",
        )
        self.milestone_id = milestone_id
        self.limit = limit


class MilestoneStateError(EscrowError):
    """Raised when a milestone operation does not fit the milestone's status."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="MILESTONE_STATE_ERROR")


class MilestoneScheduleError(EscrowError):
    """Raised at deal setup when the milestone plan is inconsistent."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_MILESTONE_SCHEDULE")


# --- Release Errors ---


class ReleaseNotEligibleError(EscrowError):
    def __init__(self, deal_id: str, reason: str) -> None:
        super().__init__(
            message=f"Deal {deal_id} is not eligible for release: {reason}",
            code="RELEASE_NOT_ELIGIBLE",
        )
        self.deal_id = deal_id
        self.reason = reason


class ClawbackNotAllowedError(EscrowError):
    """Raised when released money cannot be taken back from the payee."""

    def __init__(self, deal_id: str, reason: str) -> None:
        super().__init__(
            message=f"Cannot claw back funds on deal {deal_id}: {reason}",
            code="CLAWBACK_NOT_ALLOWED",
        )
        self.deal_id = deal_id
        self.reason = reason


# --- Ledger Errors ---


class InsufficientCustodyError(EscrowError):
    """Raised when an outflow would drive a deal's custody balance negative.

    This indicates a broken invariant (e.g. a double release) and must
    never be presented to a client as something to retry.
    """

    def __init__(self, deal_id: str, requested: str, available: str) -> None:
        super().__init__(
            message=(
                f"Insufficient custody for deal {deal_id}: "
                f"requested {requested}, available {available}"
            ),
            code="INSUFFICIENT_CUSTODY",
        )
        self.deal_id = deal_id
        self.requested = requested
        self.available = available


class CurrencyMismatchError(EscrowError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            message=f"Currency mismatch: deal settles in {expected}, got {actual}",
            code="CURRENCY_MISMATCH",
        )


class IdempotencyConflictError(EscrowError):
    """Raised when an idempotency key is reused with different parameters."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Idempotency key reused with different parameters: {idempotency_key}",
            code="IDEMPOTENCY_CONFLICT",
        )
        self.idempotency_key = idempotency_key


# --- Payment Rail Errors ---


class PaymentRailError(EscrowError):
    """Base class for typed failures reported by the payment collaborator."""

    def __init__(self, message: str, code: str = "PAYMENT_RAIL_ERROR") -> None:
        super().__init__(message=message, code=code)


class AccountNotConnectedError(PaymentRailError):
    def __init__(self, message: str = "Payee has no connected payout account") -> None:
        super().__init__(message=message, code="ACCOUNT_NOT_CONNECTED")


class RailTemporaryFailureError(PaymentRailError):
    retryable = True

    def __init__(self, message: str = "Payment rail temporarily unavailable") -> None:
        super().__init__(message=message, code="RAIL_TEMPORARY_FAILURE")


class RailRejectedError(PaymentRailError):
    def __init__(self, message: str = "Payment rail rejected the instruction") -> None:
        super().__init__(message=message, code="RAIL_REJECTED")


class PayoutStateError(EscrowError):
    """Raised when a rail callback does not fit the payout's current status."""

    def __init__(self, payout_id: str, current: str, reported: str) -> None:
        super().__init__(
            message=f"Payout {payout_id} is {current}; cannot apply {reported}",
            code="PAYOUT_STATE_ERROR",
        )
        self.payout_id = payout_id


class PayoutFailedError(EscrowError):
    """Operator-visible payout failure. Never reverses a committed release."""

    def __init__(self, payout_id: str, reason: str, retryable: bool = False) -> None:
        super().__init__(
            message=f"Payout {payout_id} failed: {reason}",
            code="PAYOUT_FAILED",
        )
        self.payout_id = payout_id
        self.reason = reason
        self.retryable = retryable
