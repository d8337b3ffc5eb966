"""Deal lifecycle state machine guard.

Two layers enforce legal status changes:

1. ``TRANSITIONS``: the static table keyed by (current, target) listing the
   actor roles allowed to take that edge. ``can_transition`` is a pure
   lookup over it and never touches a deal.
2. ``DealStateMachine`` (python-statemachine): the same graph expressed as
   one event per target status. The transition service fires the event
   before writing, so an edge missing from the graph raises
   ``TransitionNotAllowed`` no matter what the role table says.

Cancellation is only reachable from AWAITING_PAYMENT and AWAITING_SHIPMENT.
RELEASED, REFUNDED and CANCELED are final.
"""

from __future__ import annotations

from statemachine import State, StateMachine

from escrow_engine.domain.enums import ActorRole, DealStatus

PAYER = ActorRole.PAYER
PAYEE = ActorRole.PAYEE
ADMIN = ActorRole.ADMIN
SYSTEM = ActorRole.SYSTEM

S = DealStatus

TRANSITIONS: dict[tuple[DealStatus, DealStatus], frozenset[ActorRole]] = {
    # Funding
    (S.AWAITING_PAYMENT, S.FUNDED): frozenset({PAYER, SYSTEM}),
    (S.AWAITING_PAYMENT, S.AWAITING_SHIPMENT): frozenset({PAYER, SYSTEM}),
    (S.AWAITING_PAYMENT, S.CANCELED): frozenset({PAYER, PAYEE, ADMIN}),
    # Physical goods
    (S.AWAITING_SHIPMENT, S.IN_TRANSIT): frozenset({PAYEE}),
    (S.AWAITING_SHIPMENT, S.PROOF_SUBMITTED): frozenset({PAYEE}),
    (S.AWAITING_SHIPMENT, S.DISPUTED): frozenset({PAYER}),
    (S.AWAITING_SHIPMENT, S.CANCELED): frozenset({PAYER, ADMIN}),
    (S.IN_TRANSIT, S.PROOF_SUBMITTED): frozenset({PAYEE}),
    (S.IN_TRANSIT, S.UNDER_REVIEW): frozenset({PAYER, ADMIN}),
    (S.IN_TRANSIT, S.DELIVERED_PENDING_RELEASE): frozenset({PAYER, SYSTEM}),
    (S.IN_TRANSIT, S.RELEASED): frozenset({PAYER}),
    (S.IN_TRANSIT, S.DISPUTED): frozenset({PAYER}),
    # Proof and review
    (S.FUNDED, S.PROOF_SUBMITTED): frozenset({PAYEE}),
    (S.FUNDED, S.DISPUTED): frozenset({PAYER, PAYEE}),
    (S.PROOF_SUBMITTED, S.UNDER_REVIEW): frozenset({PAYER, ADMIN, SYSTEM}),
    (S.PROOF_SUBMITTED, S.RELEASED): frozenset({PAYER, ADMIN, SYSTEM}),
    (S.PROOF_SUBMITTED, S.DISPUTED): frozenset({PAYER, PAYEE}),
    (S.PROOF_SUBMITTED, S.FUNDED): frozenset({SYSTEM}),
    (S.UNDER_REVIEW, S.PROOF_SUBMITTED): frozenset({PAYEE, ADMIN}),
    (S.UNDER_REVIEW, S.RELEASED): frozenset({PAYER, ADMIN, SYSTEM}),
    (S.UNDER_REVIEW, S.DISPUTED): frozenset({PAYER, PAYEE}),
    (S.UNDER_REVIEW, S.FUNDED): frozenset({SYSTEM}),
    (S.DELIVERED_PENDING_RELEASE, S.RELEASED): frozenset({PAYER, SYSTEM, ADMIN}),
    (S.DELIVERED_PENDING_RELEASE, S.DISPUTED): frozenset({PAYER}),
    # Disputes
    (S.DISPUTED, S.RESOLVED): frozenset({ADMIN}),
    (S.RESOLVED, S.RELEASED): frozenset({ADMIN, SYSTEM}),
    (S.RESOLVED, S.REFUNDED): frozenset({ADMIN, SYSTEM}),
    (S.RESOLVED, S.FUNDED): frozenset({ADMIN, SYSTEM}),
}


def can_transition(current: DealStatus | str, target: DealStatus | str, actor_role: ActorRole | str) -> bool:
    """Return True if ``actor_role`` may move a deal from ``current`` to ``target``."""
    try:
        key = (DealStatus(current), DealStatus(target))
        role = ActorRole(actor_role)
    except ValueError:
        return False
    return role in TRANSITIONS.get(key, frozenset())


def allowed_targets(current: DealStatus | str, actor_role: ActorRole | str) -> list[DealStatus]:
    """List the statuses ``actor_role`` may move a deal to from ``current``."""
    return [
        target
        for (source, target), roles in TRANSITIONS.items()
        if source == current and actor_role in roles
    ]


class DealStateMachine(StateMachine):
    """Graph guard for the deal lifecycle.

    Usage:
        sm = DealStateMachine(current_status="FUNDED")
        sm.submit_proof()  # transitions to PROOF_SUBMITTED
        sm.status          # "PROOF_SUBMITTED"
    """

    # --- States ---
    AWAITING_PAYMENT = State("AWAITING_PAYMENT", initial=True)
    FUNDED = State("FUNDED")
    AWAITING_SHIPMENT = State("AWAITING_SHIPMENT")
    IN_TRANSIT = State("IN_TRANSIT")
    PROOF_SUBMITTED = State("PROOF_SUBMITTED")
    UNDER_REVIEW = State("UNDER_REVIEW")
    DELIVERED_PENDING_RELEASE = State("DELIVERED_PENDING_RELEASE")
    DISPUTED = State("DISPUTED")
    RESOLVED = State("RESOLVED")
    RELEASED = State("RELEASED", final=True)
    REFUNDED = State("REFUNDED", final=True)
    CANCELED = State("CANCELED", final=True)

    # --- Events (one per target status) ---
    fund = (
        AWAITING_PAYMENT.to(FUNDED)
        | PROOF_SUBMITTED.to(FUNDED)
        | UNDER_REVIEW.to(FUNDED)
        | RESOLVED.to(FUNDED)
    )
    await_shipment = AWAITING_PAYMENT.to(AWAITING_SHIPMENT)
    ship = AWAITING_SHIPMENT.to(IN_TRANSIT)
    submit_proof = (
        FUNDED.to(PROOF_SUBMITTED)
        | AWAITING_SHIPMENT.to(PROOF_SUBMITTED)
        | IN_TRANSIT.to(PROOF_SUBMITTED)
        | UNDER_REVIEW.to(PROOF_SUBMITTED)
    )
    start_review = PROOF_SUBMITTED.to(UNDER_REVIEW) | IN_TRANSIT.to(UNDER_REVIEW)
    confirm_delivery = IN_TRANSIT.to(DELIVERED_PENDING_RELEASE)
    dispute = (
        FUNDED.to(DISPUTED)
        | AWAITING_SHIPMENT.to(DISPUTED)
        | IN_TRANSIT.to(DISPUTED)
        | PROOF_SUBMITTED.to(DISPUTED)
        | UNDER_REVIEW.to(DISPUTED)
        | DELIVERED_PENDING_RELEASE.to(DISPUTED)
    )
    resolve = DISPUTED.to(RESOLVED)
    release = (
        PROOF_SUBMITTED.to(RELEASED)
        | UNDER_REVIEW.to(RELEASED)
        | IN_TRANSIT.to(RELEASED)
        | DELIVERED_PENDING_RELEASE.to(RELEASED)
        | RESOLVED.to(RELEASED)
    )
    refund = RESOLVED.to(REFUNDED)
    cancel = AWAITING_PAYMENT.to(CANCELED) | AWAITING_SHIPMENT.to(CANCELED)

    def __init__(self, current_status: str = "AWAITING_PAYMENT") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches DealStatus)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        return [event.name for event in self.allowed_events]


EVENT_FOR_TARGET: dict[DealStatus, str] = {
    S.FUNDED: "fund",
    S.AWAITING_SHIPMENT: "await_shipment",
    S.IN_TRANSIT: "ship",
    S.PROOF_SUBMITTED: "submit_proof",
    S.UNDER_REVIEW: "start_review",
    S.DELIVERED_PENDING_RELEASE: "confirm_delivery",
    S.DISPUTED: "dispute",
    S.RESOLVED: "resolve",
    S.RELEASED: "release",
    S.REFUNDED: "refund",
    S.CANCELED: "cancel",
}


def validate_transition(current_status: str, target_status: str) -> str:
    """Fire the event leading to ``target_status`` and return the new status.

    Raises:
        TransitionNotAllowed: If the graph has no such edge.
        ValueError: If either status is unknown.
    """
    sm = DealStateMachine(current_status=current_status)
    event_name = EVENT_FOR_TARGET.get(DealStatus(target_status))
    if event_name is None:
        raise ValueError(f"No event leads to '{target_status}'")
    getattr(sm, event_name)()
    return sm.status
