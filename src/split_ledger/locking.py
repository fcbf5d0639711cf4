"""Per-aggregate exclusive scopes."""

from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from threading import Lock, RLock


class KeyedLocks:
    """One re-entrant lock per key while anyone holds or waits on it.

    Operations on the same expense or settlement run one at a time while
    different keys proceed independently. A key's lock is dropped once its
    last user leaves.
    """

    def __init__(self):
        self._guard = Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: dict[Hashable, list] = {}

    def _checkout(self, key: Hashable) -> RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for key for the duration of the block."""
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    @contextmanager
    def hold_many(self, keys: list[Hashable]) -> Iterator[None]:
        """Hold several locks, always acquired in sorted key order."""
        ordered = sorted(set(keys), key=repr)
        locks = [self._checkout(key) for key in ordered]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._checkin(key)
