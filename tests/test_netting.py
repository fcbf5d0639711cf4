"""Tests for balance netting and settle-up suggestions."""

from decimal import Decimal

import pytest

from split_ledger.exceptions import NotFoundError
from split_ledger.models import EqualSplit
from split_ledger.netting import simplify_debts


@pytest.fixture
def trip(ledger, group, users):
    """Alice pays 90.00 split three ways; Bob pays 30.00 split with Alice."""
    dinner = ledger.create(
        group.id, users["alice"], "Dinner", "90.00", "restaurants",
        EqualSplit(participants=[users["alice"], users["bob"], users["carol"]]),
    )
    taxi = ledger.create(
        group.id, users["bob"], "Taxi", "30.00", "transportation",
        EqualSplit(participants=[users["alice"], users["bob"]]),
    )
    return dinner, taxi


class TestPairwise:
    def test_net_balance(self, netting, trip, group, users):
        assert netting.net_balance_between_users(
            users["alice"], users["bob"], group.id
        ) == Decimal("15.00")

    def test_antisymmetric(self, netting, trip, group, users):
        ids = [users["alice"], users["bob"], users["carol"]]
        for a in ids:
            for b in ids:
                assert netting.net_balance_between_users(
                    a, b, group.id
                ) == -netting.net_balance_between_users(b, a, group.id)

    def test_self_balance_is_zero(self, netting, trip, group, users):
        assert netting.net_balance_between_users(
            users["alice"], users["alice"], group.id
        ) == Decimal("0")

    def test_settled_split_no_longer_counts(self, netting, ledger, trip, group, users):
        dinner, _ = trip
        ledger.settle_split(dinner.splits[1].id, users["bob"])
        assert netting.net_balance_between_users(
            users["alice"], users["bob"], group.id
        ) == Decimal("-15.00")

    def test_deleted_expense_ignored(self, netting, ledger, trip, group, users):
        _, taxi = trip
        ledger.delete(taxi.expense.id, users["bob"])
        assert netting.net_balance_between_users(
            users["alice"], users["bob"], group.id
        ) == Decimal("30.00")

    def test_settlements_do_not_move_balances(self, netting, machine, trip, group, users):
        settlement = machine.create(
            group.id, users["bob"], users["alice"], "15.00", "cash", None, users["bob"]
        )
        machine.confirm(settlement.id, users["alice"])
        assert netting.net_balance_between_users(
            users["alice"], users["bob"], group.id
        ) == Decimal("15.00")


class TestGroupTotals:
    def test_total_owed_includes_own_share(self, netting, trip, group, users):
        assert netting.total_owed_by_user_in_group(users["alice"], group.id) == Decimal("45.00")
        assert netting.total_owed_by_user_in_group(users["carol"], group.id) == Decimal("30.00")
        assert netting.total_owed_by_user_in_group(users["dave"], group.id) == Decimal("0.00")

    def test_group_balances(self, netting, trip, group, users):
        balances = {b.user_id: b for b in netting.group_balances(group.id)}
        assert set(balances) == {users["alice"], users["bob"], users["carol"]}

        alice = balances[users["alice"]]
        assert alice.owed_to_user == Decimal("60.00")
        assert alice.owed_by_user == Decimal("15.00")
        assert alice.net == Decimal("45.00")
        assert balances[users["bob"]].net == Decimal("-15.00")
        assert balances[users["carol"]].net == Decimal("-30.00")
        assert sum(b.net for b in balances.values()) == 0

    def test_empty_group(self, netting, group, users):
        balances = netting.group_balances(group.id)
        assert all(b.net == 0 for b in balances)
        assert netting.suggest_settlements(group.id) == []

    def test_unknown_group(self, netting):
        with pytest.raises(NotFoundError):
            netting.group_balances(404)
        with pytest.raises(NotFoundError):
            netting.net_balance_between_users(1, 2, 404)


class TestSuggestions:
    def test_suggest_settlements(self, netting, trip, group, users):
        transfers = netting.suggest_settlements(group.id)
        assert [(t.from_user, t.to_user, t.amount) for t in transfers] == [
            (users["carol"], users["alice"], Decimal("30.00")),
            (users["bob"], users["alice"], Decimal("15.00")),
        ]

    def test_simplify_debts_clears_every_position(self):
        positions = {
            1: Decimal("50.00"),
            2: Decimal("-20.00"),
            3: Decimal("-45.00"),
            4: Decimal("15.00"),
        }
        transfers = simplify_debts(positions)

        remaining = dict(positions)
        for t in transfers:
            remaining[t.from_user] += t.amount
            remaining[t.to_user] -= t.amount
        assert all(value == 0 for value in remaining.values())
        assert len(transfers) <= len(positions) - 1

    def test_ignores_sub_cent_noise(self):
        assert simplify_debts({1: Decimal("0.004"), 2: Decimal("-0.004")}) == []
