"""Process-wide keyed locks.

Threads of one process working on the same key queue here before they touch
the database. Across processes the services rely on row locks
(``SELECT ... FOR UPDATE``) and conditional updates, so this registry only
saves threads from contending on those. It is created
once at import and handed out through ``settlement_locks`` and
``invoice_year_locks``.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class KeyedLockRegistry:
    """One ``threading.Lock`` per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable):
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


settlement_locks = KeyedLockRegistry()
invoice_year_locks = KeyedLockRegistry()
