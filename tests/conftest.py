"""Shared fixtures: a temp database with a small group of users."""

from datetime import UTC, datetime, timedelta

import pytest

from split_ledger.db import Database
from split_ledger.ledger import ExpenseLedger
from split_ledger.locking import KeyedLocks
from split_ledger.models import ActivityEvent, Group, User
from split_ledger.netting import BalanceNetting
from split_ledger.settlement import SettlementStateMachine


class FakeClock:
    """Settable clock for time-dependent behaviour."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, hours: int = 0):
        self.now = self.now + timedelta(days=days, hours=hours)


class RecordingSink:
    """Activity sink that keeps every event it receives."""

    def __init__(self):
        self.events: list[ActivityEvent] = []

    def record(self, event: ActivityEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action.value for event in self.events]


@pytest.fixture
def db(tmp_path):
    """Create a temporary database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def users(db):
    """Alice, Bob and Carol share a group; Dave is an outsider."""
    names = ["Alice", "Bob", "Carol", "Dave"]
    created = [
        db.add_user(User(name=name, email=f"{name.lower()}@example.com"))
        for name in names
    ]
    return {user.name.lower(): user.id for user in created}


@pytest.fixture
def group(db, users):
    """Group created by Alice (admin) with Bob and Carol as members."""
    return db.create_group(
        Group(
            name="Trip",
            default_currency="USD",
            created_by=users["alice"],
            member_ids={users["bob"], users["carol"]},
        )
    )


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def ledger(db, sink, clock, locks):
    return ExpenseLedger(db, sink=sink, clock=clock, locks=locks)


@pytest.fixture
def machine(db, sink, clock, locks):
    return SettlementStateMachine(db, sink=sink, clock=clock, locks=locks)


@pytest.fixture
def netting(db):
    return BalanceNetting(db)
