"""
Keyed mutual exclusion.

A KeyedLock hands out one re-entrant lock per key (loan id, member id
or "YYYY-MM" month). Callers always take keyed locks before
opening a storage transaction.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLock:
    """Registry of per-key re-entrant locks"""

    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for a single key"""
        lock = self._lock_for(key)
        with lock:
            yield

    @contextmanager
    def hold_many(self, keys) -> Iterator[None]:
        """Hold several keys at once, acquired in sorted order"""
        ordered = sorted(set(keys), key=str)
        locks = [self._lock_for(key) for key in ordered]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class EngineLocks:
    """The lock registries shared by every component of one engine instance"""

    def __init__(self):
        self.loans = KeyedLock("loan")
        self.members = KeyedLock("member")
        self.months = KeyedLock("threshold_month")
