"""Rounding and validation tests for split allocation."""

from decimal import Decimal

import pytest

from split_ledger.allocator import (
    absorb_remainder,
    allocate,
    allocate_equal,
    allocate_exact_amounts,
    allocate_percentages,
    allocate_shares,
)
from split_ledger.exceptions import AmountMismatchError, InvalidArgumentError
from split_ledger.models import EqualSplit, PercentageSplit, SharesSplit, SplitType
from split_ledger.money import Money


def usd(amount: str) -> Money:
    return Money.of(amount, "USD")


def amounts(allocations) -> list[Decimal]:
    return [a.amount.amount for a in allocations]


class TestEqualSplit:
    def test_three_way_split_gives_remainder_to_last(self):
        result = allocate_equal(usd("100.00"), [1, 2, 3])
        assert amounts(result) == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert [a.user_id for a in result] == [1, 2, 3]
        assert all(a.split_type == SplitType.EQUAL for a in result)

    def test_even_split_has_no_remainder(self):
        assert amounts(allocate_equal(usd("90.00"), [1, 2, 3])) == [Decimal("30.00")] * 3

    def test_single_participant_gets_everything(self):
        assert amounts(allocate_equal(usd("12.34"), [7])) == [Decimal("12.34")]

    def test_round_up_remainder_can_be_negative(self):
        """0.05 / 3 rounds up to 0.02 each, so the last gets 0.01."""
        assert amounts(allocate_equal(usd("0.05"), [1, 2, 3])) == [
            Decimal("0.02"),
            Decimal("0.02"),
            Decimal("0.01"),
        ]

    def test_too_small_to_split(self):
        with pytest.raises(InvalidArgumentError, match="must be positive"):
            allocate_equal(usd("0.01"), [1, 2])

    @pytest.mark.parametrize("total", ["0.01", "0.07", "1.00", "10.01", "99.99", "1000.00"])
    @pytest.mark.parametrize("count", [1, 2, 3, 6, 7])
    def test_sums_exactly(self, total, count):
        if Decimal(total) < Decimal("0.01") * count:
            pytest.skip("total too small for this many participants")
        result = allocate_equal(usd(total), list(range(1, count + 1)))
        assert sum(amounts(result)) == Decimal(total)

    def test_empty_participants(self):
        with pytest.raises(InvalidArgumentError):
            allocate_equal(usd("10.00"), [])

    def test_duplicate_participants(self):
        with pytest.raises(InvalidArgumentError, match="unique"):
            allocate_equal(usd("10.00"), [1, 1])

    def test_non_member_rejected(self):
        with pytest.raises(InvalidArgumentError, match="not members"):
            allocate_equal(usd("10.00"), [1, 9], members={1, 2})

    def test_non_positive_total(self):
        with pytest.raises(InvalidArgumentError):
            allocate_equal(usd("0.00"), [1])


class TestExactAmounts:
    def test_amounts_taken_verbatim(self):
        result = allocate_exact_amounts(usd("50.00"), {1: "20.00", 2: "30.00"})
        assert amounts(result) == [Decimal("20.00"), Decimal("30.00")]

    def test_one_cent_drift_allowed(self):
        result = allocate_exact_amounts(usd("10.00"), {1: "5.00", 2: "4.99"})
        assert sum(amounts(result)) == Decimal("9.99")

    def test_mismatch(self):
        with pytest.raises(AmountMismatchError) as exc_info:
            allocate_exact_amounts(usd("10.00"), {1: "5.00", 2: "4.00"})
        assert exc_info.value.difference == Decimal("1.00")

    def test_sub_cent_amount(self):
        with pytest.raises(InvalidArgumentError, match="sub-cent"):
            allocate_exact_amounts(usd("10.00"), {1: "5.005", 2: "4.995"})

    def test_non_positive_amount(self):
        with pytest.raises(InvalidArgumentError):
            allocate_exact_amounts(usd("10.00"), {1: "10.00", 2: "0"})

    def test_empty(self):
        with pytest.raises(InvalidArgumentError):
            allocate_exact_amounts(usd("10.00"), {})


class TestPercentages:
    def test_thirds_sum_to_total(self):
        result = allocate_percentages(
            usd("90.00"), {1: Decimal("33.33"), 2: Decimal("33.33"), 3: Decimal("33.34")}
        )
        assert sum(amounts(result)) == Decimal("90.00")
        assert result[0].percentage == Decimal("33.33")
        assert result[0].split_type == SplitType.PERCENTAGE

    def test_last_entry_absorbs_remainder(self):
        result = allocate_percentages(usd("10.00"), {1: "33.33", 2: "33.33", 3: "33.34"})
        assert amounts(result) == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]

    def test_must_sum_to_100(self):
        with pytest.raises(InvalidArgumentError, match="sum to 100"):
            allocate_percentages(usd("100.00"), {1: Decimal("50"), 2: Decimal("49")})

    def test_tolerance_of_one_hundredth(self):
        result = allocate_percentages(usd("100.00"), {1: "50", 2: "49.99"})
        assert sum(amounts(result)) == Decimal("100.00")

    def test_out_of_range(self):
        with pytest.raises(InvalidArgumentError, match="between 0 and 100"):
            allocate_percentages(usd("100.00"), {1: "150", 2: "-50"})

    def test_zero_percent_share_rejected(self):
        with pytest.raises(InvalidArgumentError, match="must be positive"):
            allocate_percentages(usd("100.00"), {1: "100", 2: "0"})


class TestShares:
    def test_weighted_split(self):
        result = allocate_shares(usd("100.00"), {1: 2, 2: 1, 3: 1})
        assert amounts(result) == [Decimal("50.00"), Decimal("25.00"), Decimal("25.00")]
        assert result[0].shares == Decimal("2")

    def test_fractional_shares_sum_exactly(self):
        result = allocate_shares(usd("10.00"), {1: "1.5", 2: "1.5", 3: "1"})
        assert sum(amounts(result)) == Decimal("10.00")

    def test_zero_total_shares(self):
        with pytest.raises(InvalidArgumentError, match="greater than zero"):
            allocate_shares(usd("10.00"), {1: 0, 2: 0})

    def test_negative_shares(self):
        with pytest.raises(InvalidArgumentError, match="negative"):
            allocate_shares(usd("10.00"), {1: 3, 2: -1})


class TestDispatch:
    def test_dispatches_on_strategy(self):
        assert len(allocate(usd("30.00"), EqualSplit(participants=[1, 2, 3]))) == 3
        assert len(allocate(usd("30.00"), PercentageSplit(percentages={1: 50, 2: 50}))) == 2
        assert len(allocate(usd("30.00"), SharesSplit(shares={1: 1}))) == 1

    def test_strategy_rejects_float_values(self):
        with pytest.raises(InvalidArgumentError):
            PercentageSplit(percentages={1: 50.0, 2: 50.0})


def test_absorb_remainder_is_exact():
    raw = [Decimal("1") / Decimal("3")] * 3
    result = absorb_remainder(usd("1.00"), [1, 2, 3], raw)
    assert [m.amount for m in result] == [Decimal("0.33"), Decimal("0.33"), Decimal("0.34")]
