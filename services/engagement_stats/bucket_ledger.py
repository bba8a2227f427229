"""
Bucket Ledger

Per-user, per-resolution, per-period accumulators. One event fans out to
exactly four bucket increments (day, week, month, year), each atomic under
its own lock; the coarser three go through the RollupEngine.

Closing:
    A bucket is closed when closed explicitly or once its period ended more
    than ``late_write_grace_seconds`` ago. Closed buckets still accept events
    (late writes); a late write is counted, logged and triggers a repair pass
    over the affected week/month/year chain.
"""

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

import structlog

from shared.models import RESOLUTIONS, Bucket, Resolution

from .config import EngineConfig
from .errors import LateWriteDetected, PropagationFailure
from .keyed_locks import KeyedLockRegistry
from .metrics import LATE_WRITES
from .period_keyer import (
    next_period_start,
    period_keys_for,
    period_start_from_key,
    to_utc,
    utc_now,
)
from .rollup_engine import RollupEngine
from .stats_store import StatsStore, bucket_key, bucket_prefix

logger = structlog.get_logger(__name__)


class BucketLedger:
    """
    Multi-resolution bucket accumulator.

    Usage:
        ledger = BucketLedger(store)
        ledger.record_event("alice", "post_views", 3, at)
        day = ledger.get_bucket("alice", Resolution.DAY, "2024-03-01")
        ledger.close_bucket("alice", Resolution.WEEK, "2024-W09")
    """

    def __init__(
        self,
        store: StatsStore,
        config: Optional[EngineConfig] = None,
        locks: Optional[KeyedLockRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the ledger.

        Args:
            store: Persistence collaborator
            config: Engine configuration (grace window, retries)
            locks: Lock registry (a private one is created if omitted)
            clock: Source of "now" for closing and timestamps
        """
        self.store = store
        self.config = config or EngineConfig()
        self.locks = locks or KeyedLockRegistry()
        self.clock = clock
        self.rollup = RollupEngine(self, self.config)

        self._events_recorded = 0
        self._late_writes = 0
        self._late_write_log: Deque[LateWriteDetected] = deque(maxlen=100)
        self._stats_lock = threading.Lock()

    @staticmethod
    def lock_key(user_id: str, resolution: Resolution, period_key: str) -> tuple:
        """Lock key ordered by (resolution rank, period key) within a user."""
        resolution = Resolution(resolution)
        return ("bucket", user_id, resolution.rank, period_key)

    def _grace_elapsed(self, end: datetime, now: Optional[datetime] = None) -> bool:
        now = to_utc(now or self.clock())
        return end + timedelta(seconds=self.config.late_write_grace_seconds) <= now

    def get_bucket(self, user_id: str, resolution: Resolution, period_key: str) -> Bucket:
        """
        Current contents of a bucket. Missing buckets come back as zero buckets.

        Raises:
            ValueError: If the period key does not match the resolution
        """
        resolution = Resolution(resolution)
        start = period_start_from_key(period_key, resolution)
        end = next_period_start(start, resolution)

        document = self.store.get(bucket_key(user_id, resolution.value, period_key))
        if document is None:
            return Bucket(user_id=user_id, resolution=resolution, period_key=period_key, start=start, end=end)
        return Bucket.from_document(document, start=start, end=end)

    def save(self, bucket: Bucket) -> None:
        self.store.put(
            bucket_key(bucket.user_id, bucket.resolution.value, bucket.period_key),
            bucket.to_document(),
        )

    def apply_delta(
        self,
        user_id: str,
        resolution: Resolution,
        period_key: str,
        field_name: str,
        delta: int,
    ) -> Tuple[Bucket, bool]:
        """
        Add ``delta`` to one bucket. The caller must hold the bucket's lock.

        Returns:
            (updated bucket, whether the bucket was already closed)
        """
        bucket = self.get_bucket(user_id, resolution, period_key)
        late = bucket.closed or self._grace_elapsed(bucket.end)
        if late:
            bucket.closed = True
            bucket.late_writes += 1

        bucket.add(field_name, delta)
        bucket.updated_at = self.clock()
        self.save(bucket)
        return bucket, late

    def record_event(
        self,
        user_id: str,
        field_name: str,
        delta: int,
        at: datetime,
    ) -> Dict[Resolution, Bucket]:
        """
        Apply one event to its day, week, month and year buckets.

        Args:
            user_id: Owner of the buckets
            field_name: Bucket field (post_views, likes, ...) or extension metric name
            delta: Positive amount to add
            at: Event time; bucketed in UTC

        Returns:
            The updated bucket per resolution

        Raises:
            ValueError: If delta is not positive or the field name is empty
            PersistenceUnavailable: If the day bucket cannot be written; nothing was applied

        Once the day bucket is written the event is committed. A coarser bucket
        that cannot be updated or repaired is logged and left queued for
        repair_pending(), never reported to the caller.
        """
        if delta <= 0:
            raise ValueError("Bucket deltas must be positive")
        if not field_name:
            raise ValueError("Field name cannot be empty")

        keys = period_keys_for(at)
        day_key = keys[Resolution.DAY]

        with self.locks.hold(self.lock_key(user_id, Resolution.DAY, day_key)):
            day_bucket, day_late = self.apply_delta(user_id, Resolution.DAY, day_key, field_name, delta)
            result = self.rollup.propagate(user_id, field_name, delta, keys)

        with self._stats_lock:
            self._events_recorded += 1

        late_resolutions = ([Resolution.DAY] if day_late else []) + result.late
        if late_resolutions:
            self._record_late_write(user_id, late_resolutions[0], keys, field_name, delta, at)

        try:
            if result.pending:
                self.rollup.escalate(result.pending)
            if late_resolutions:
                self.rollup.reconcile_chain(user_id, at)
        except PropagationFailure as e:
            logger.error(
                "Rollup deferred to repair queue",
                user_id=user_id,
                field=field_name,
                pending=e.pending,
            )

        buckets = dict(result.buckets)
        buckets[Resolution.DAY] = day_bucket
        return buckets

    def _record_late_write(
        self,
        user_id: str,
        resolution: Resolution,
        keys: Dict[Resolution, str],
        field_name: str,
        delta: int,
        at: datetime,
    ) -> None:
        record = LateWriteDetected(
            user_id=user_id,
            resolution=resolution.value,
            period_key=keys[resolution],
            field=field_name,
            delta=delta,
            event_at=at,
        )
        with self._stats_lock:
            self._late_writes += 1
            self._late_write_log.append(record)
        LATE_WRITES.inc()
        logger.warning(
            "Late write detected",
            user_id=user_id,
            resolution=resolution.value,
            period_key=keys[resolution],
            field=field_name,
            delta=delta,
        )

    def close_bucket(self, user_id: str, resolution: Resolution, period_key: str) -> Bucket:
        """
        Mark a period closed for rollup purposes. Idempotent.

        Closing a coarser bucket re-verifies it against its children.
        """
        resolution = Resolution(resolution)
        with self.locks.hold(self.lock_key(user_id, resolution, period_key)):
            bucket = self.get_bucket(user_id, resolution, period_key)
            if bucket.closed:
                return bucket
            bucket.closed = True
            bucket.updated_at = self.clock()
            self.save(bucket)

        logger.info("Bucket closed", user_id=user_id, resolution=resolution.value, period_key=period_key)

        if resolution != Resolution.DAY:
            bucket = self.rollup.repair(user_id, resolution, period_key)
        return bucket

    def close_expired(self, user_id: str, now: Optional[datetime] = None) -> int:
        """
        Close every open bucket of a user whose grace window has elapsed.

        Returns:
            Number of buckets closed
        """
        now = now or self.clock()
        closed = 0
        for resolution in RESOLUTIONS:
            for key in self.list_period_keys(user_id, resolution):
                bucket = self.get_bucket(user_id, resolution, key)
                if not bucket.closed and self._grace_elapsed(bucket.end, now):
                    self.close_bucket(user_id, resolution, key)
                    closed += 1
        return closed

    def list_period_keys(self, user_id: str, resolution: Resolution) -> List[str]:
        """Sorted keys of every stored bucket of a user at a resolution."""
        prefix = bucket_prefix(user_id, Resolution(resolution).value)
        return sorted(key[len(prefix):] for key in self.store.scan(prefix))

    def earliest_period_key(self, user_id: str, resolution: Resolution) -> Optional[str]:
        keys = self.list_period_keys(user_id, resolution)
        return keys[0] if keys else None

    @property
    def late_write_count(self) -> int:
        return self._late_writes

    def recent_late_writes(self) -> List[LateWriteDetected]:
        return list(self._late_write_log)

    def get_stats(self) -> Dict[str, int]:
        stats = {
            "events_recorded": self._events_recorded,
            "late_writes": self._late_writes,
        }
        stats.update(self.rollup.get_stats())
        return stats
