"""
Rollup Engine

Keeps every coarser bucket equal to the sum of its finer children without
re-scanning history per query.

Write path (eager):
    The day bucket's lock is held while the same delta is added to the week,
    month and year buckets. Locks are always taken in (resolution rank,
    period key) order and the year is updated while the month lock is held,
    so a concurrent repair never observes a child whose delta has not yet
    reached its parent.

Failure path:
    A failed delta-add applied nothing, so it is retried as is with
    exponential backoff. Once retries are exhausted the bucket is queued and
    recomputed from its children (repair). Keys that still cannot be repaired
    are reported through PropagationFailure and stay queued for
    repair_pending(). The event itself is already committed by then: its day
    bucket was written, so it is never applied a second time.

Containment (see period_keyer.FINER_RESOLUTION):
    week  = sum of its 7 days
    month = sum of its days
    year  = sum of its 12 months
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Set, Tuple

import structlog

from shared.models import BUCKET_FIELDS, Bucket, Resolution

from .config import EngineConfig
from .errors import PersistenceUnavailable, PropagationFailure
from .metrics import PROPAGATION_RETRIES, ROLLUP_REPAIRS
from .period_keyer import child_period_keys, finer_resolution, period_key

logger = structlog.get_logger(__name__)

PendingKey = Tuple[str, str, str]


@dataclass
class PropagationResult:
    """Outcome of fanning one delta out to the coarser buckets."""

    buckets: Dict[Resolution, Bucket] = field(default_factory=dict)
    late: List[Resolution] = field(default_factory=list)
    pending: List[PendingKey] = field(default_factory=list)


def sum_children(children: List[Bucket]) -> Tuple[Dict[str, int], Dict[str, int]]:
    """Sum numeric fields and extension metrics of a list of buckets."""
    fields = {name: 0 for name in BUCKET_FIELDS}
    extension: Dict[str, int] = {}
    for child in children:
        for name in BUCKET_FIELDS:
            fields[name] += getattr(child, name)
        for name, value in child.extension.items():
            extension[name] = extension.get(name, 0) + value
    return fields, extension


def _matches(parent: Bucket, fields: Dict[str, int], extension: Dict[str, int]) -> bool:
    if any(getattr(parent, name) != value for name, value in fields.items()):
        return False
    names = set(parent.extension) | set(extension)
    return all(parent.extension.get(name, 0) == extension.get(name, 0) for name in names)


class RollupEngine:
    """
    Propagation and repair of coarser buckets.

    Owned by a BucketLedger; uses the ledger's store access and lock registry.
    """

    def __init__(self, ledger, config: EngineConfig):
        self.ledger = ledger
        self.config = config

        self._pending: Set[PendingKey] = set()
        self._state_lock = threading.Lock()
        self._retries = 0
        self._repairs = 0

    def _hold(self, user_id: str, resolution: Resolution, key: str):
        return self.ledger.locks.hold(self.ledger.lock_key(user_id, resolution, key))

    def propagate(
        self,
        user_id: str,
        field_name: str,
        delta: int,
        keys: Dict[Resolution, str],
    ) -> PropagationResult:
        """
        Add ``delta`` to the week, month and year buckets of an event.

        The caller must hold the day bucket's lock.
        """
        result = PropagationResult()

        with self._hold(user_id, Resolution.WEEK, keys[Resolution.WEEK]):
            self._apply_with_retry(user_id, Resolution.WEEK, keys[Resolution.WEEK], field_name, delta, result)

        with self._hold(user_id, Resolution.MONTH, keys[Resolution.MONTH]):
            self._apply_with_retry(user_id, Resolution.MONTH, keys[Resolution.MONTH], field_name, delta, result)
            with self._hold(user_id, Resolution.YEAR, keys[Resolution.YEAR]):
                self._apply_with_retry(user_id, Resolution.YEAR, keys[Resolution.YEAR], field_name, delta, result)

        return result

    def _apply_with_retry(
        self,
        user_id: str,
        resolution: Resolution,
        key: str,
        field_name: str,
        delta: int,
        result: PropagationResult,
    ) -> None:
        log = logger.bind(user_id=user_id, resolution=resolution.value, period_key=key)
        attempt = 0

        while True:
            try:
                bucket, late = self.ledger.apply_delta(user_id, resolution, key, field_name, delta)
                result.buckets[resolution] = bucket
                if late:
                    result.late.append(resolution)
                return

            except PersistenceUnavailable as e:
                attempt += 1
                if attempt > self.config.max_propagation_retries:
                    log.error("Propagation failed after all retries", error=str(e), attempts=attempt)
                    pending = (user_id, resolution.value, key)
                    with self._state_lock:
                        self._pending.add(pending)
                    result.pending.append(pending)
                    return

                with self._state_lock:
                    self._retries += 1
                PROPAGATION_RETRIES.inc()

                backoff_delay = min(
                    self.config.propagation_backoff_seconds
                    * (self.config.propagation_backoff_multiplier ** (attempt - 1)),
                    self.config.max_propagation_backoff_seconds,
                )
                log.warning("Propagation failed, retrying", error=str(e), attempt=attempt, backoff_delay=backoff_delay)
                if backoff_delay > 0:
                    time.sleep(backoff_delay)

    def escalate(self, pending: List[PendingKey]) -> None:
        """
        Repair the given coarser buckets. Failures stay queued for repair_pending().

        Raises:
            PropagationFailure: If any bucket could not be repaired either
        """
        remaining = []
        for user_id, resolution, key in sorted(pending, key=lambda p: Resolution(p[1]).rank):
            try:
                self.repair(user_id, Resolution(resolution), key)
            except PersistenceUnavailable as e:
                logger.error(
                    "Rollup repair failed",
                    user_id=user_id,
                    resolution=resolution,
                    period_key=key,
                    error=str(e),
                )
                remaining.append((user_id, resolution, key))
                with self._state_lock:
                    self._pending.add((user_id, resolution, key))

        if remaining:
            raise PropagationFailure(
                f"{len(remaining)} bucket(s) await rollup repair", pending=remaining
            )

    def _children(self, user_id: str, resolution: Resolution, key: str) -> Tuple[Resolution, List[str]]:
        child = finer_resolution(resolution)
        if child is None:
            raise ValueError("Day buckets have no children to roll up from")
        return child, child_period_keys(key, resolution)

    def verify(self, user_id: str, resolution: Resolution, key: str) -> bool:
        """Check that a coarser bucket equals the sum of its children. Read only."""
        resolution = Resolution(resolution)
        child, child_keys = self._children(user_id, resolution, key)
        lock_keys = [self.ledger.lock_key(user_id, child, k) for k in child_keys]
        lock_keys.append(self.ledger.lock_key(user_id, resolution, key))

        with self.ledger.locks.hold_many(lock_keys):
            children = [self.ledger.get_bucket(user_id, child, k) for k in child_keys]
            parent = self.ledger.get_bucket(user_id, resolution, key)

        fields, extension = sum_children(children)
        return _matches(parent, fields, extension)

    def repair(self, user_id: str, resolution: Resolution, key: str) -> Bucket:
        """
        Recompute a coarser bucket as the sum of its current children.

        Closed state and late-write counts are kept; only summable values change.

        Raises:
            ValueError: For day buckets
            PersistenceUnavailable: If the store fails
        """
        resolution = Resolution(resolution)
        child, child_keys = self._children(user_id, resolution, key)
        lock_keys = [self.ledger.lock_key(user_id, child, k) for k in child_keys]
        lock_keys.append(self.ledger.lock_key(user_id, resolution, key))

        with self.ledger.locks.hold_many(lock_keys):
            children = [self.ledger.get_bucket(user_id, child, k) for k in child_keys]
            parent = self.ledger.get_bucket(user_id, resolution, key)
            fields, extension = sum_children(children)

            if not _matches(parent, fields, extension):
                logger.warning(
                    "Repairing rollup",
                    user_id=user_id,
                    resolution=resolution.value,
                    period_key=key,
                    before=parent.totals(),
                )
                for name, value in fields.items():
                    setattr(parent, name, value)
                parent.extension = extension
                self.ledger.save(parent)

                with self._state_lock:
                    self._repairs += 1
                ROLLUP_REPAIRS.inc()

        with self._state_lock:
            self._pending.discard((user_id, resolution.value, key))
        return parent

    def reconcile_chain(self, user_id: str, at: datetime) -> None:
        """
        Verify and repair the week, month and year buckets containing ``at``.

        Raises:
            PropagationFailure: If any bucket could not be repaired; it stays queued
        """
        self.escalate([
            (user_id, resolution.value, period_key(at, resolution))
            for resolution in (Resolution.WEEK, Resolution.MONTH, Resolution.YEAR)
        ])

    def repair_pending(self) -> int:
        """
        Retry every queued repair.

        Returns:
            Number of buckets repaired
        """
        with self._state_lock:
            queued = sorted(self._pending, key=lambda p: Resolution(p[1]).rank)

        repaired = 0
        for user_id, resolution, key in queued:
            try:
                self.repair(user_id, Resolution(resolution), key)
                repaired += 1
            except PersistenceUnavailable as e:
                logger.error(
                    "Queued rollup repair failed",
                    user_id=user_id,
                    resolution=resolution,
                    period_key=key,
                    error=str(e),
                )
        return repaired

    @property
    def pending(self) -> List[PendingKey]:
        with self._state_lock:
            return sorted(self._pending)

    def get_stats(self) -> Dict[str, int]:
        return {
            "propagation_retries": self._retries,
            "rollup_repairs": self._repairs,
            "pending_repairs": len(self._pending),
        }
