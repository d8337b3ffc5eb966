"""Tests for platform fee computation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from escrow_engine.domain.fees import compute_fee, to_money

RATE = Decimal("0.08")


class TestComputeFee:
    def test_eight_percent_of_one_hundred(self) -> None:
        breakdown = compute_fee(Decimal("100.00"), RATE)
        assert breakdown.fee == Decimal("8.00")
        assert breakdown.net == Decimal("92.00")

    def test_fee_rounds_to_cents(self) -> None:
        assert compute_fee(Decimal("10.06"), RATE).fee == Decimal("0.80")
        assert compute_fee(Decimal("0.07"), RATE).fee == Decimal("0.01")

    def test_exact_half_cent_rounds_up(self) -> None:
        breakdown = compute_fee(Decimal("0.10"), Decimal("0.05"))
        assert breakdown.fee == Decimal("0.01")
        assert breakdown.net == Decimal("0.09")

    @pytest.mark.parametrize("gross", ["0.01", "33.33", "150.00", "999999.99"])
    def test_fee_plus_net_equals_gross(self, gross: str) -> None:
        breakdown = compute_fee(Decimal(gross), RATE)
        assert breakdown.fee + breakdown.net == breakdown.gross == Decimal(gross)

    def test_zero_rate(self) -> None:
        breakdown = compute_fee(Decimal("50.00"), Decimal("0"))
        assert breakdown.fee == Decimal("0.00")
        assert breakdown.net == Decimal("50.00")

    def test_negative_gross_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            compute_fee(Decimal("-1.00"), RATE)

    @pytest.mark.parametrize("rate", ["1", "1.5", "-0.01"])
    def test_rate_out_of_range_rejected(self, rate: str) -> None:
        with pytest.raises(ValueError, match="Fee rate"):
            compute_fee(Decimal("10.00"), Decimal(rate))

    def test_to_dict_uses_plain_strings(self) -> None:
        assert compute_fee(Decimal("100"), RATE).to_dict() == {
            "gross": "100.00",
            "fee": "8.00",
            "net": "92.00",
        }


class TestToMoney:
    def test_quantizes_to_cents(self) -> None:
        assert to_money("12.345") == Decimal("12.35")
        assert to_money(7) == Decimal("7.00")
