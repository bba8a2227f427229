"""
Per-key locking for counters and buckets.

Every counter and bucket is its own unit of mutable state with its own lock;
there is no lock spanning users. Callers that need several keys at once take
them through ``hold_many``, which acquires in sorted order so two callers
can never wait on each other.

A key's lock only exists while some caller holds or waits for it, so the
registry stays as small as the number of keys in use at one instant.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterable, Iterator, List


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLockRegistry:
    """
    Reference-counted ``threading.Lock`` per key.

    Thread Safety:
      - The registry lock only guards entry bookkeeping, never key mutation
      - Locks are not reentrant; a caller must not take a key it holds
    """

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, key: Hashable) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _Entry) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock of a single key."""
        entry = self._checkout(key)
        try:
            with entry.lock:
                yield
        finally:
            self._checkin(key, entry)

    @contextmanager
    def hold_many(self, keys: Iterable[Hashable]) -> Iterator[None]:
        """Hold the locks of several keys, acquired in sorted key order."""
        checked_out: List[tuple] = []
        acquired: List[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                checked_out.append((key, entry))
                entry.lock.acquire()
                acquired.append(entry.lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key, entry in reversed(checked_out):
                self._checkin(key, entry)

    def is_locked(self, key: Hashable) -> bool:
        with self._registry_lock:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def count(self) -> int:
        """Number of keys currently held or waited on."""
        with self._registry_lock:
            return len(self._entries)
