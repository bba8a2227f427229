"""
Counter Store

Authoritative running totals per user (posts, followers, following,
subscribers, likes, comments, views).

Each (user_id, field) pair is one document in the store and one lock in the
registry, so concurrent writes to the same counter serialise while writes to
different counters or users proceed in parallel.
"""

import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

import structlog

from shared.models import CounterField, UserStatsAggregate

from .errors import CounterUnderflow
from .keyed_locks import KeyedLockRegistry
from .metrics import COUNTER_UNDERFLOWS
from .period_keyer import utc_now
from .stats_store import StatsStore, counter_key

logger = structlog.get_logger(__name__)


class CounterStore:
    """
    Atomic running totals.

    Usage:
        counters = CounterStore(store)
        counters.increment("alice", CounterField.FOLLOWERS)
        counters.decrement("alice", CounterField.FOLLOWERS, 2)  # clamps at 0
        totals = counters.snapshot("alice")  # immutable
    """

    def __init__(
        self,
        store: StatsStore,
        locks: Optional[KeyedLockRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        underflow_history: int = 100,
    ):
        """
        Initialize the counter store.

        Args:
            store: Persistence collaborator
            locks: Lock registry (a private one is created if omitted)
            clock: Source of "now" for last-updated timestamps
            underflow_history: Underflow records kept for inspection
        """
        self.store = store
        self.locks = locks or KeyedLockRegistry()
        self.clock = clock

        self._underflows: Deque[CounterUnderflow] = deque(maxlen=underflow_history)
        self._underflow_count = 0
        self._stats_lock = threading.Lock()

    @staticmethod
    def _lock_key(user_id: str, field: CounterField) -> tuple:
        return ("counter", user_id, field.value)

    def _read(self, user_id: str, field: CounterField) -> Dict:
        return self.store.get(counter_key(user_id, field.value)) or {"value": 0, "updated_at": None}

    def _apply(self, user_id: str, field: CounterField, delta: int) -> int:
        """Read-modify-write one counter under its lock; returns the new value."""
        with self.locks.hold(self._lock_key(user_id, field)):
            document = self._read(user_id, field)
            current = int(document["value"])
            new_value = current + delta

            if new_value < 0:
                record = CounterUnderflow(
                    user_id=user_id,
                    field=field.value,
                    requested=-delta,
                    applied=current,
                    at=self.clock(),
                )
                with self._stats_lock:
                    self._underflows.append(record)
                    self._underflow_count += 1
                COUNTER_UNDERFLOWS.inc()
                logger.warning(
                    "Counter underflow clamped at zero",
                    user_id=user_id,
                    field=field.value,
                    requested=-delta,
                    applied=current,
                )
                new_value = 0

            self.store.put(
                counter_key(user_id, field.value),
                {"value": new_value, "updated_at": self.clock().isoformat()},
            )
            return new_value

    def increment(self, user_id: str, field: CounterField, delta: int = 1) -> int:
        """
        Add ``delta`` to a counter.

        Returns:
            The counter's new value

        Raises:
            ValueError: If delta is negative
            PersistenceUnavailable: If the store fails
        """
        field = CounterField(field)
        if delta < 0:
            raise ValueError("Increment delta must be non-negative")
        return self._apply(user_id, field, delta)

    def decrement(self, user_id: str, field: CounterField, delta: int = 1) -> int:
        """
        Subtract ``delta`` from a counter, clamping at zero.

        Unfollow and unsubscribe events can arrive before the matching follow,
        so going below zero is recorded as a CounterUnderflow, never raised.

        Returns:
            The counter's new value

        Raises:
            ValueError: If delta is negative
            PersistenceUnavailable: If the store fails
        """
        field = CounterField(field)
        if delta < 0:
            raise ValueError("Decrement delta must be non-negative")
        return self._apply(user_id, field, -delta)

    def get(self, user_id: str, field: CounterField) -> int:
        return int(self._read(user_id, CounterField(field))["value"])

    def snapshot(self, user_id: str) -> UserStatsAggregate:
        """
        Consistent copy of every counter of a user at one instant.

        Holds the user's counter locks only while reading, so writers wait at
        most for the duration of seven store reads.
        """
        fields = list(CounterField)
        with self.locks.hold_many(self._lock_key(user_id, field) for field in fields):
            documents = {field: self._read(user_id, field) for field in fields}

        timestamps = [
            datetime.fromisoformat(doc["updated_at"])
            for doc in documents.values()
            if doc.get("updated_at")
        ]
        return UserStatsAggregate(
            user_id=user_id,
            last_updated=max(timestamps) if timestamps else None,
            **{field.value: int(doc["value"]) for field, doc in documents.items()},
        )

    @property
    def underflow_count(self) -> int:
        return self._underflow_count

    def recent_underflows(self) -> List[CounterUnderflow]:
        return list(self._underflows)
