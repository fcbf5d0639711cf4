"""Tests for the settlement state machine."""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from split_ledger.activity import CompositeActivitySink, DatabaseActivitySink
from split_ledger.exceptions import (
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from split_ledger.models import PaymentMethod, SettlementStatus
from split_ledger.settlement import SettlementStateMachine, can_transition, is_terminal


@pytest.fixture
def pending(machine, group, users):
    """Bob owes Alice 25.00 and asks to settle by UPI."""
    return machine.create(
        group.id, users["bob"], users["alice"], "25.00", "upi", "for dinner", users["bob"]
    )


class TestTransitionTable:
    def test_pending_moves_anywhere(self):
        for target in (
            SettlementStatus.IN_PROGRESS,
            SettlementStatus.COMPLETED,
            SettlementStatus.REJECTED,
            SettlementStatus.CANCELLED,
        ):
            assert can_transition(SettlementStatus.PENDING, target)

    def test_in_progress_only_completes(self):
        assert can_transition(SettlementStatus.IN_PROGRESS, SettlementStatus.COMPLETED)
        assert not can_transition(SettlementStatus.IN_PROGRESS, SettlementStatus.CANCELLED)
        assert not can_transition(SettlementStatus.IN_PROGRESS, SettlementStatus.REJECTED)

    @pytest.mark.parametrize(
        "status",
        [SettlementStatus.COMPLETED, SettlementStatus.REJECTED, SettlementStatus.CANCELLED],
    )
    def test_terminal(self, status):
        assert is_terminal(status)
        assert not any(can_transition(status, target) for target in SettlementStatus)


class TestCreate:
    def test_starts_pending(self, pending, users, sink):
        assert pending.id is not None
        assert pending.status == SettlementStatus.PENDING
        assert pending.amount == Decimal("25.00")
        assert pending.currency == "USD"
        assert pending.payment_method == PaymentMethod.UPI
        assert pending.initiated_by == users["bob"]
        assert sink.actions() == ["settlement_created"]

    def test_payer_equals_payee(self, machine, group, users):
        with pytest.raises(InvalidArgumentError, match="different"):
            machine.create(group.id, users["bob"], users["bob"], "5.00", None, None, users["bob"])

    @pytest.mark.parametrize("amount", ["0", "-1.00", "1.001"])
    def test_bad_amount(self, machine, group, users, amount):
        with pytest.raises(InvalidArgumentError):
            machine.create(
                group.id, users["bob"], users["alice"], amount, None, None, users["bob"]
            )

    def test_unknown_method(self, machine, group, users):
        with pytest.raises(InvalidArgumentError, match="payment method"):
            machine.create(
                group.id, users["bob"], users["alice"], "5.00", "cheque", None, users["bob"]
            )

    @pytest.mark.parametrize("currency", ["US", "DOLLARS"])
    def test_bad_currency(self, machine, group, users, currency):
        with pytest.raises(InvalidArgumentError, match="currency"):
            machine.create(
                group.id, users["bob"], users["alice"], "5.00", None, None, users["bob"],
                currency=currency,
            )

    def test_currency_normalized(self, machine, group, users):
        settlement = machine.create(
            group.id, users["bob"], users["alice"], "5.00", None, None, users["bob"],
            currency=" eur ",
        )
        assert settlement.currency == "EUR"

    def test_overlong_notes(self, machine, group, users):
        with pytest.raises(InvalidArgumentError, match="notes"):
            machine.create(
                group.id, users["bob"], users["alice"], "5.00", None, "n" * 501, users["bob"]
            )
        assert machine.group_settlements(group.id) == []

    def test_unknown_group(self, machine, users):
        with pytest.raises(NotFoundError):
            machine.create(999, users["bob"], users["alice"], "5.00", None, None, users["bob"])

    def test_non_member(self, machine, group, users):
        with pytest.raises(ForbiddenError):
            machine.create(
                group.id, users["dave"], users["alice"], "5.00", None, None, users["dave"]
            )


class TestConfirm:
    def test_payee_confirms(self, machine, pending, users, clock, sink):
        confirmed = machine.confirm(pending.id, users["alice"], "txn-42")
        assert confirmed.status == SettlementStatus.COMPLETED
        assert confirmed.confirmed_by == users["alice"]
        assert confirmed.confirmed_at == clock.now
        assert confirmed.external_transaction_id == "txn-42"
        assert confirmed.version == pending.version + 1
        assert machine.get(pending.id).status == SettlementStatus.COMPLETED
        assert sink.actions()[-1] == "settlement_confirmed"

    def test_admin_confirms(self, machine, group, users):
        settlement = machine.create(
            group.id, users["carol"], users["bob"], "5.00", "cash", None, users["carol"]
        )
        confirmed = machine.confirm(settlement.id, users["alice"])
        assert confirmed.confirmed_by == users["alice"]

    def test_payer_cannot_confirm(self, machine, pending, users):
        with pytest.raises(ForbiddenError):
            machine.confirm(pending.id, users["bob"])
        assert machine.get(pending.id).status == SettlementStatus.PENDING

    def test_overlong_transaction_id(self, machine, pending, users):
        with pytest.raises(InvalidArgumentError, match="external_transaction_id"):
            machine.confirm(pending.id, users["alice"], "t" * 101)
        assert machine.get(pending.id).status == SettlementStatus.PENDING

    def test_confirm_from_in_progress(self, machine, pending, users):
        machine.mark_in_progress(pending.id, users["bob"])
        confirmed = machine.confirm(pending.id, users["alice"])
        assert confirmed.status == SettlementStatus.COMPLETED


class TestRejectAndCancel:
    def test_reject(self, machine, pending, users):
        rejected = machine.reject(pending.id, users["alice"], "never received")
        assert rejected.status == SettlementStatus.REJECTED
        assert rejected.rejected_by == users["alice"]
        assert rejected.rejection_reason == "never received"

    def test_overlong_reason_leaves_settlement_pending(self, machine, pending, users, sink):
        with pytest.raises(InvalidArgumentError, match="rejection_reason"):
            machine.reject(pending.id, users["alice"], "r" * 501)
        stored = machine.get(pending.id)
        assert stored.status == SettlementStatus.PENDING
        assert stored.version == pending.version
        assert sink.actions() == ["settlement_created"]

    def test_bystander_cannot_reject(self, machine, pending, users):
        with pytest.raises(ForbiddenError):
            machine.reject(pending.id, users["carol"], "no")

    def test_initiator_cancels(self, machine, pending, users):
        cancelled = machine.cancel(pending.id, users["bob"])
        assert cancelled.status == SettlementStatus.CANCELLED
        assert cancelled.cancelled_by == users["bob"]

    def test_admin_cancels(self, machine, pending, users):
        assert machine.cancel(pending.id, users["alice"]).cancelled_by == users["alice"]

    def test_member_cannot_cancel(self, machine, pending, users):
        with pytest.raises(ForbiddenError):
            machine.cancel(pending.id, users["carol"])

    def test_cannot_cancel_in_progress(self, machine, pending, users):
        machine.mark_in_progress(pending.id, users["carol"])
        with pytest.raises(InvalidStateError):
            machine.cancel(pending.id, users["bob"])

    def test_outsider_cannot_mark_in_progress(self, machine, pending, users):
        with pytest.raises(ForbiddenError):
            machine.mark_in_progress(pending.id, users["dave"])


class TestTerminalStates:
    @pytest.fixture(params=["confirm", "reject", "cancel"])
    def terminal(self, request, machine, pending, users):
        if request.param == "confirm":
            return machine.confirm(pending.id, users["alice"])
        if request.param == "reject":
            return machine.reject(pending.id, users["alice"], "no")
        return machine.cancel(pending.id, users["bob"])

    def test_every_transition_rejected(self, machine, terminal, users):
        with pytest.raises(InvalidStateError):
            machine.confirm(terminal.id, users["alice"])
        with pytest.raises(InvalidStateError):
            machine.reject(terminal.id, users["alice"], "late")
        with pytest.raises(InvalidStateError):
            machine.cancel(terminal.id, users["bob"])
        with pytest.raises(InvalidStateError):
            machine.mark_in_progress(terminal.id, users["bob"])

    def test_state_check_precedes_actor_check(self, machine, terminal, users):
        """Even an unauthorized actor sees InvalidState on a terminal settlement."""
        with pytest.raises(InvalidStateError):
            machine.confirm(terminal.id, users["carol"])


class TestConcurrency:
    def test_lost_version_race_is_invalid_state(self, machine, db, pending, users):
        with patch.object(db, "save_settlement", return_value=None):
            with pytest.raises(InvalidStateError):
                machine.confirm(pending.id, users["alice"])

    def test_sink_failure_does_not_roll_back(self, db, clock, group, users):
        broken = MagicMock()
        broken.record.side_effect = RuntimeError("sink down")
        machine = SettlementStateMachine(db, sink=broken, clock=clock)

        settlement = machine.create(
            group.id, users["bob"], users["alice"], "10.00", None, None, users["bob"]
        )
        confirmed = machine.confirm(settlement.id, users["alice"])

        assert confirmed.status == SettlementStatus.COMPLETED
        assert machine.get(settlement.id).status == SettlementStatus.COMPLETED
        assert broken.record.call_count == 2


class TestQueries:
    def test_pending_and_totals(self, machine, pending, group, users):
        other = machine.create(
            group.id, users["carol"], users["bob"], "7.50", None, None, users["carol"]
        )
        done = machine.create(
            group.id, users["bob"], users["carol"], "3.00", None, None, users["bob"]
        )
        machine.confirm(done.id, users["carol"])

        assert {s.id for s in machine.pending_for_user(users["bob"])} == {pending.id, other.id}
        assert machine.pending_amount_by_user(users["bob"]) == Decimal("25.00")
        assert machine.total_settled_by_user(users["bob"]) == Decimal("3.00")
        assert machine.total_settled_by_user(users["alice"]) == Decimal("0.00")

    def test_between_either_direction(self, machine, pending, group, users):
        reverse = machine.create(
            group.id, users["alice"], users["bob"], "1.00", None, None, users["alice"]
        )
        machine.create(group.id, users["carol"], users["bob"], "2.00", None, None, users["carol"])
        found = machine.settlements_between(group.id, users["bob"], users["alice"])
        assert {s.id for s in found} == {pending.id, reverse.id}

    def test_group_settlements_by_status(self, machine, pending, group, users):
        machine.reject(pending.id, users["alice"], "no")
        assert machine.group_settlements(group.id, SettlementStatus.PENDING) == []
        assert len(machine.group_settlements(group.id)) == 1

    def test_recent_newest_first(self, machine, group, users, clock):
        ids = []
        for amount in ("1.00", "2.00", "3.00"):
            ids.append(
                machine.create(
                    group.id, users["bob"], users["alice"], amount, None, None, users["bob"]
                ).id
            )
            clock.advance(hours=1)
        assert [s.id for s in machine.recent_settlements(group.id, limit=2)] == ids[:0:-1]


class TestReminders:
    def test_only_stale_pending_get_reminders(self, machine, pending, group, users, clock, sink):
        clock.advance(days=10)
        fresh = machine.create(
            group.id, users["carol"], users["alice"], "4.00", None, None, users["carol"]
        )

        stale = machine.settlements_needing_reminder()
        assert [s.id for s in stale] == [pending.id]
        assert fresh.id not in {s.id for s in stale}

        assert machine.send_reminders() == 1
        reminder = sink.events[-1]
        assert reminder.action.value == "settlement_reminder"
        assert reminder.entity_id == pending.id
        assert reminder.details["age_days"] == 10
        assert machine.get(pending.id).status == SettlementStatus.PENDING

    def test_reminders_recorded_in_activity_log(self, db, clock, group, users):
        machine = SettlementStateMachine(
            db, sink=CompositeActivitySink([DatabaseActivitySink(db)]), clock=clock
        )
        machine.create(group.id, users["bob"], users["alice"], "4.00", None, None, users["bob"])
        clock.advance(days=8)
        machine.send_reminders()

        actions = [event.action.value for event in db.get_group_activity(group.id)]
        assert actions == ["settlement_reminder", "settlement_created"]
