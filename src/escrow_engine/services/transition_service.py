"""State Machine Core — applies deal status transitions.

A transition is applied in this order, inside the caller's transaction:

    1. Optimistic check: if the caller says which status it observed and
       the locked row holds another one, raise ConcurrentModificationError.
    2. Guard: the role table (``can_transition``) and the python-statemachine
       graph must both allow the edge. A rejection is written to the event
       log through an independent session, then InvalidTransitionError.
    3. Conditional status write (status + version compare-and-set).
    4. STATUS_CHANGED event.
    5. Side effects registered for the edge, each exactly once.

Side effects live in one registry keyed by (from_status, to_status), with
``None`` as a wildcard source. If any of them fails the whole transaction
rolls back, status write included.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.clock import utc_now
from escrow_engine.domain.enums import DealCategory, DealStatus, EventType
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DealNotFoundError,
    InvalidTransitionError,
)
from escrow_engine.domain.state_machine import can_transition, validate_transition
from escrow_engine.infrastructure.database.repositories import DealRepository
from escrow_engine.logging_config import get_logger
from escrow_engine.services.audit import AuditLog
from escrow_engine.services.settlement_service import SettlementService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.results import TransitionContext
    from escrow_engine.infrastructure.database.orm_models import Deal, LedgerTransaction
    from escrow_engine.services.payment_service import PaymentRail
    from escrow_engine.services.settlement_service import SettlementResult

logger = get_logger(__name__)


@dataclass
class TransitionOutcome:
    """What one applied transition did.

    ``options`` carries caller parameters for side effects (e.g. the
    release idempotency key); side effects append what they recorded.
    """

    deal: Deal
    from_status: DealStatus
    to_status: DealStatus
    context: TransitionContext
    now: datetime
    options: dict[str, Any] = field(default_factory=dict)
    ledger_entries: list[LedgerTransaction] = field(default_factory=list)
    settlement: SettlementResult | None = None


SideEffect = Callable[["TransitionService", TransitionOutcome], Awaitable[None]]

_SIDE_EFFECTS: dict[tuple[DealStatus | None, DealStatus], list[SideEffect]] = {}


def on_transition(source: DealStatus | None, target: DealStatus) -> Callable[[SideEffect], SideEffect]:
    """Register a side effect for an edge. ``source=None`` matches any source."""

    def decorator(func: SideEffect) -> SideEffect:
        _SIDE_EFFECTS.setdefault((source, target), []).append(func)
        return func

    return decorator


def side_effects_for(source: DealStatus, target: DealStatus) -> list[SideEffect]:
    return [*_SIDE_EFFECTS.get((source, target), []), *_SIDE_EFFECTS.get((None, target), [])]


class TransitionService:
    """Validates and applies deal status transitions."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        rail: PaymentRail | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._deal_repo = DealRepository(session)
        self._audit = AuditLog(session, session_factory)
        self.settlement = SettlementService(session, self._settings, rail)

    @property
    def settings(self) -> Settings:
        return self._settings

    async def lock_deal(self, deal_id: uuid.UUID) -> Deal:
        """Take the deal's row lock for the rest of the transaction."""
        deal = await self._deal_repo.get_for_update(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        return deal

    async def apply_transition(
        self,
        deal_id: uuid.UUID,
        target: DealStatus,
        context: TransitionContext,
        now: datetime | None = None,
        **options: Any,
    ) -> TransitionOutcome:
        """Lock the deal and move it to ``target``."""
        deal = await self.lock_deal(deal_id)
        return await self.transition(deal, target, context, now, **options)

    async def transition(
        self,
        deal: Deal,
        target: DealStatus,
        context: TransitionContext,
        now: datetime | None = None,
        **options: Any,
    ) -> TransitionOutcome:
        """Move an already-locked deal to ``target``.

        Raises:
            ConcurrentModificationError: If the deal is no longer in the
                status the caller expected, or another writer won the
                status write.
            InvalidTransitionError: If the edge or the actor's role is not allowed.
        """
        now = now or utc_now()
        current = DealStatus(deal.status)

        if context.expected_status is not None and current != context.expected_status:
            logger.warning(
                "transition.stale_status",
                deal_id=deal.id,
                expected=context.expected_status,
                actual=current,
            )
            raise ConcurrentModificationError(
                str(deal.id), expected=str(context.expected_status), actual=str(current)
            )

        await self.ensure_allowed(deal, target, context)

        values: dict[str, Any] = {}
        if target is DealStatus.RELEASED:
            values["released_at"] = now
        if current is DealStatus.AWAITING_PAYMENT and target in (
            DealStatus.FUNDED,
            DealStatus.AWAITING_SHIPMENT,
        ):
            values["funded_at"] = now

        written = await self._deal_repo.compare_and_set_status(deal, current, target, **values)
        if not written:
            logger.warning("transition.lost_race", deal_id=deal.id, expected=current, target=target)
            raise ConcurrentModificationError(str(deal.id), expected=str(current))

        payload = {
            key: value
            for key, value in {"reason": context.reason, **options}.items()
            if value is not None
        }
        await self._audit.log_context_event(
            deal.id,
            context,
            EventType.STATUS_CHANGED,
            payload or None,
            old_status=current.value,
            new_status=target.value,
        )

        outcome = TransitionOutcome(
            deal=deal,
            from_status=current,
            to_status=target,
            context=context,
            now=now,
            options=options,
        )
        for effect in side_effects_for(current, target):
            await effect(self, outcome)
        await self._session.flush()

        logger.info(
            "deal.transitioned",
            deal_id=deal.id,
            old=current,
            new=target,
            actor_id=context.actor_id,
            actor_role=context.actor_role,
            version=deal.version,
        )
        return outcome

    async def ensure_allowed(
        self,
        deal: Deal,
        target: DealStatus,
        context: TransitionContext,
    ) -> None:
        """Raise InvalidTransitionError (after auditing it) unless the edge is allowed."""
        current = DealStatus(deal.status)
        reason: str | None = None
        if not can_transition(current, target, context.actor_role):
            reason = "not permitted for role"
        else:
            try:
                validate_transition(current.value, target.value)
            except TransitionNotAllowed:
                reason = "not in lifecycle graph"

        if reason is None:
            return

        logger.warning(
            "transition.rejected",
            deal_id=deal.id,
            current=current,
            attempted=target,
            actor_role=context.actor_role,
            reason=reason,
        )
        await self._audit.log_rejection(
            deal.id, context, current.value, target.value, reason
        )
        raise InvalidTransitionError(current.value, target.value, str(context.actor_role))

    def grace_period(self, deal: Deal) -> timedelta:
        """Deal-level auto-release grace for the deal's category."""
        if deal.category in (DealCategory.DIGITAL_GOOD, DealCategory.TICKET):
            return timedelta(hours=self._settings.auto_release_grace_hours_digital)
        return timedelta(hours=self._settings.auto_release_grace_hours)


# ---------------------------------------------------------------------------
# Side-effect registry
# ---------------------------------------------------------------------------


@on_transition(DealStatus.AWAITING_PAYMENT, DealStatus.FUNDED)
async def _record_funding(service: TransitionService, outcome: TransitionOutcome) -> None:
    entry = await service.settlement.fund(outcome.deal, outcome.context)
    outcome.ledger_entries.append(entry)


@on_transition(DealStatus.AWAITING_PAYMENT, DealStatus.AWAITING_SHIPMENT)
async def _record_funding_with_provisional_credit(
    service: TransitionService, outcome: TransitionOutcome
) -> None:
    entry = await service.settlement.fund(outcome.deal, outcome.context)
    outcome.ledger_entries.append(entry)
    await service.settlement.apply_provisional_credit(outcome.deal, outcome.context)


@on_transition(DealStatus.AWAITING_SHIPMENT, DealStatus.CANCELED)
async def _roll_back_and_refund(service: TransitionService, outcome: TransitionOutcome) -> None:
    deal = outcome.deal
    await service.settlement.clear_provisional_credit(deal, outcome.context, rolled_back=True)
    custody = await service.settlement.custody(deal)
    if custody > 0:
        entry = await service.settlement.refund_to_payer(
            deal, custody, outcome.context, idempotency_key=f"cancel-refund:{deal.id}"
        )
        outcome.ledger_entries.append(entry)


@on_transition(None, DealStatus.RELEASED)
async def _release_remaining_custody(service: TransitionService, outcome: TransitionOutcome) -> None:
    deal = outcome.deal
    deal.auto_release_at = None
    await service.settlement.clear_provisional_credit(deal, outcome.context, rolled_back=False)
    custody = await service.settlement.custody(deal)
    if custody > 0:
        key = outcome.options.get("idempotency_key") or f"release:{deal.id}:deal"
        result = await service.settlement.release_to_payee(
            deal, custody, outcome.context, idempotency_key=key
        )
        outcome.settlement = result
        outcome.ledger_entries.append(result.entry)


@on_transition(None, DealStatus.REFUNDED)
async def _refund_remaining_custody(service: TransitionService, outcome: TransitionOutcome) -> None:
    deal = outcome.deal
    deal.auto_release_at = None
    await service.settlement.clear_provisional_credit(deal, outcome.context, rolled_back=True)
    custody = await service.settlement.custody(deal)
    if custody > 0:
        entry = await service.settlement.refund_to_payer(
            deal, custody, outcome.context, idempotency_key=f"refund:{deal.id}:deal"
        )
        outcome.ledger_entries.append(entry)


@on_transition(None, DealStatus.PROOF_SUBMITTED)
async def _schedule_auto_release_after_proof(
    service: TransitionService, outcome: TransitionOutcome
) -> None:
    deal = outcome.deal
    if not deal.allows_partial_release:
        deal.auto_release_at = outcome.now + service.grace_period(deal)


@on_transition(None, DealStatus.DELIVERED_PENDING_RELEASE)
async def _schedule_auto_release_after_delivery(
    service: TransitionService, outcome: TransitionOutcome
) -> None:
    outcome.deal.auto_release_at = outcome.now + service.grace_period(outcome.deal)


@on_transition(None, DealStatus.DISPUTED)
async def _cancel_auto_release_on_dispute(
    service: TransitionService, outcome: TransitionOutcome
) -> None:
    outcome.deal.auto_release_at = None


@on_transition(None, DealStatus.FUNDED)
async def _clear_auto_release_on_funded(
    service: TransitionService, outcome: TransitionOutcome
) -> None:
    outcome.deal.auto_release_at = None
