"""Platform fee computation.

The platform takes a fixed share of every release. The fee is rounded
half-up to the cent and the payee receives the remainder, so
``fee + net == gross`` always holds exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_money(value: Decimal | int | str) -> Decimal:
    """Quantize an amount to cents."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    gross: Decimal
    fee: Decimal
    net: Decimal

    def to_dict(self) -> dict:
        return {
            "gross": format(self.gross, "f"),
            "fee": format(self.fee, "f"),
            "net": format(self.net, "f"),
        }


def compute_fee(gross: Decimal, rate: Decimal) -> FeeBreakdown:
    """Split ``gross`` into platform fee and payee net.

    Raises:
        ValueError: If ``gross`` is negative or ``rate`` is outside [0, 1).
    """
    if gross < 0:
        raise ValueError(f"Gross amount must be non-negative, got {gross}")
    if not Decimal(0) <= rate < Decimal(1):
        raise ValueError(f"Fee rate must be in [0, 1), got {rate}")
    gross = to_money(gross)
    fee = to_money(gross * rate)
    return FeeBreakdown(gross=gross, fee=fee, net=gross - fee)
