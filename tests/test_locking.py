"""Tests for per-key locks."""

import threading

import pytest

from split_ledger.locking import KeyedLocks
from split_ledger.models import EqualSplit


class TestKeyedLocks:
    def test_lock_dropped_after_release(self, locks):
        with locks.hold(("expense", 1)):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_reentrant_hold(self, locks):
        with locks.hold(("expense", 1)):
            with locks.hold(("expense", 1)):
                assert len(locks) == 1
            assert len(locks) == 1
        assert len(locks) == 0

    def test_hold_many_releases_every_key(self, locks):
        keys = [("expense", 3), ("expense", 1), ("expense", 3)]
        with locks.hold_many(keys):
            assert len(locks) == 2
        assert len(locks) == 0

    def test_released_on_error(self, locks):
        with pytest.raises(RuntimeError):
            with locks.hold(("settlement", 7)):
                raise RuntimeError("boom")
        assert len(locks) == 0

    def test_many_keys_do_not_accumulate(self, ledger, group, users):
        for n in range(5):
            entry = ledger.create(
                group.id, users["alice"], f"Item {n}", "10.00", "other",
                EqualSplit(participants=[users["alice"], users["bob"]]),
            )
            ledger.settle_split(entry.splits[1].id, users["bob"])
        assert len(ledger.locks) == 0

    def test_same_key_is_exclusive(self):
        locks = KeyedLocks()
        inside = []
        overlaps = []

        def work():
            for _ in range(200):
                with locks.hold("shared"):
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(1)
                    inside.pop()

        threads = [threading.Thread(target=work) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
        assert len(locks) == 0
