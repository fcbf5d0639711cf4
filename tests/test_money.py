"""Tests for fixed-point money arithmetic."""

from decimal import Decimal

import pytest

from split_ledger.exceptions import InvalidArgumentError
from split_ledger.money import (
    Money,
    from_cents,
    has_cent_precision,
    quantize,
    sum_money,
    to_cents,
    to_decimal,
)


class TestToDecimal:
    def test_accepts_int_str_and_decimal(self):
        assert to_decimal(5) == Decimal("5")
        assert to_decimal(" 12.34 ") == Decimal("12.34")
        assert to_decimal(Decimal("0.10")) == Decimal("0.10")

    def test_rejects_float(self):
        """Binary floats never enter money arithmetic."""
        with pytest.raises(InvalidArgumentError):
            to_decimal(0.1)

    def test_rejects_bool(self):
        with pytest.raises(InvalidArgumentError):
            to_decimal(True)

    @pytest.mark.parametrize("value", ["abc", "", "NaN", "Infinity", None])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(InvalidArgumentError):
            to_decimal(value)


class TestRounding:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("33.333", "33.33"),
            ("0.005", "0.01"),
            ("0.015", "0.02"),
            ("2.675", "2.68"),
            ("-0.005", "-0.01"),
        ],
    )
    def test_half_up(self, raw, expected):
        assert quantize(Decimal(raw)) == Decimal(expected)

    def test_cent_precision(self):
        assert has_cent_precision(Decimal("10.10"))
        assert has_cent_precision(Decimal("10"))
        assert not has_cent_precision(Decimal("10.001"))

    def test_cents_conversion(self):
        assert to_cents(Decimal("12.34")) == 1234
        assert from_cents(1234) == Decimal("12.34")
        assert from_cents(5) == Decimal("0.05")


class TestMoney:
    def test_amount_is_quantized(self):
        assert Money(amount="10", currency="usd") == Money(amount="10.00", currency="USD")
        assert Money(amount="1.005").amount == Decimal("1.01")

    def test_rejects_float_amount(self):
        with pytest.raises(InvalidArgumentError):
            Money(amount=1.5)

    def test_arithmetic(self):
        a = Money.of("10.00")
        b = Money.of("2.50")
        assert (a + b).amount == Decimal("12.50")
        assert (a - b).amount == Decimal("7.50")
        assert (-b).amount == Decimal("-2.50")
        assert b < a
        assert a.cents == 1000

    def test_multiply_and_divide_round_half_up(self):
        assert Money.of("10.00").multiply(Decimal("0.3333")).amount == Decimal("3.33")
        assert Money.of("100.00").divide(3).amount == Decimal("33.33")
        assert Money.of("0.05").divide(2).amount == Decimal("0.03")

    def test_divide_by_zero(self):
        with pytest.raises(InvalidArgumentError):
            Money.of("1.00").divide(0)

    def test_currency_mismatch(self):
        with pytest.raises(InvalidArgumentError, match="Currency mismatch"):
            Money.of("1.00", "USD") + Money.of("1.00", "EUR")

    def test_sum_money(self):
        values = [Money.of("0.10"), Money.of("0.20"), Money.of("0.30")]
        assert sum_money(values).amount == Decimal("0.60")

    def test_str(self):
        assert str(Money.of("5", "eur")) == "EUR 5.00"
