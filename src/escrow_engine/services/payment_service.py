"""Payment Service — the boundary to the external payout/refund rail.

The rail itself is a collaborator behind the ``PaymentRail`` protocol.
``PaymentService`` bounds every call with a timeout and turns a timeout
into ``RailTemporaryFailureError`` so callers only ever see the typed
rail errors.

For development and tests ``SimulatedPaymentRail`` generates fake
references instead of moving money.
"""

from __future__ import annotations

import asyncio
import uuid
from functools import lru_cache
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from escrow_engine.config import get_settings
from escrow_engine.domain.exceptions import (
    AccountNotConnectedError,
    RailTemporaryFailureError,
)
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

logger = get_logger(__name__)


@runtime_checkable
class PaymentRail(Protocol):
    """Protocol for the external payment collaborator.

    Implementations raise AccountNotConnectedError, RailRejectedError or
    RailTemporaryFailureError; only the last one is retryable.
    """

    async def create_payout(
        self,
        amount: Decimal,
        gross_amount: Decimal,
        fee: Decimal,
        currency: str,
        destination_account_id: str | None,
        deal_id: str,
    ) -> str:
        """Instruct a transfer of ``amount`` (net) to the payee. Returns the payout ref."""

    async def refund_payment(self, payment_ref: str, amount: Decimal) -> str:
        """Refund ``amount`` of the original charge. Returns the refund ref."""


class SimulatedPaymentRail:
    """Rail that accepts every instruction and returns fake references."""

    async def create_payout(
        self,
        amount: Decimal,
        gross_amount: Decimal,
        fee: Decimal,
        currency: str,
        destination_account_id: str | None,
        deal_id: str,
    ) -> str:
        if not destination_account_id:
            raise AccountNotConnectedError()
        payout_ref = "po_sim_" + uuid.uuid4().hex
        logger.info(
            "payment.payout_simulated",
            payout_ref=payout_ref,
            deal_id=deal_id,
            amount=amount,
            currency=currency,
            destination=destination_account_id,
        )
        return payout_ref

    async def refund_payment(self, payment_ref: str, amount: Decimal) -> str:
        refund_ref = "re_sim_" + uuid.uuid4().hex
        logger.info(
            "payment.refund_simulated",
            refund_ref=refund_ref,
            payment_ref=payment_ref,
            amount=amount,
        )
        return refund_ref


@lru_cache(maxsize=1)
def get_payment_rail() -> PaymentRail:
    """Return the configured rail (lazy singleton)."""
    if get_settings().payment_rail_simulate:
        return SimulatedPaymentRail()
    raise NotImplementedError("No live payment rail is configured")


class PaymentService:
    """Bounded calls to the payment rail."""

    def __init__(self, rail: PaymentRail | None = None, timeout_seconds: float | None = None) -> None:
        self._rail = rail if rail is not None else get_payment_rail()
        self._timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().payment_rail_timeout_seconds
        )

    async def create_payout(
        self,
        amount: Decimal,
        gross_amount: Decimal,
        fee: Decimal,
        currency: str,
        destination_account_id: str | None,
        deal_id: str,
    ) -> str:
        try:
            return await asyncio.wait_for(
                self._rail.create_payout(
                    amount=amount,
                    gross_amount=gross_amount,
                    fee=fee,
                    currency=currency,
                    destination_account_id=destination_account_id,
                    deal_id=deal_id,
                ),
                timeout=self._timeout,
            )
        except TimeoutError as err:
            logger.warning("payment.payout_timeout", deal_id=deal_id, timeout=self._timeout)
            raise RailTemporaryFailureError(
                f"Payout call timed out after {self._timeout}s"
            ) from err

    async def refund_payment(self, payment_ref: str, amount: Decimal) -> str:
        try:
            return await asyncio.wait_for(
                self._rail.refund_payment(payment_ref=payment_ref, amount=amount),
                timeout=self._timeout,
            )
        except TimeoutError as err:
            logger.warning("payment.refund_timeout", payment_ref=payment_ref, timeout=self._timeout)
            raise RailTemporaryFailureError(
                f"Refund call timed out after {self._timeout}s"
            ) from err
