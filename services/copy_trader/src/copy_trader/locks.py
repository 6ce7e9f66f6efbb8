"""Per-key mutual exclusion."""

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLock:
    """
    One re-entrant lock per key, created on demand.

    Operations on distinct keys proceed in parallel; operations on the
    same key are serialized. Entries are dropped once no holder or
    waiter remains, so the table does not grow with ledger size.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [RLock, refcount]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
