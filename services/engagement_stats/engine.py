"""
Engagement Statistics Engine

Facade wiring the counter store, bucket ledger, rollup engine, growth
calculator and query service around one persistence collaborator. This is the
interface producers emit into and the application queries.
"""

import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from shared.models import (
    BUCKET_FIELDS,
    EVENT_TARGETS,
    CounterField,
    EngagementEvent,
    EventMetric,
    GrowthMetric,
    Resolution,
    StatsMetric,
    StatsResponse,
    UserStatsAggregate,
    Bucket,
)

from .bucket_ledger import BucketLedger
from .config import EngineConfig
from .counter_store import CounterStore
from .errors import PersistenceUnavailable
from .growth_calculator import GrowthCalculator
from .keyed_locks import KeyedLockRegistry
from .metrics import EVENTS_RECORDED
from .period_keyer import utc_now
from .query_service import FilterInput, QueryService
from .stats_store import InMemoryStatsStore, StatsStore

logger = structlog.get_logger(__name__)


class EngagementStatsEngine:
    """
    Multi-resolution engagement statistics.

    Usage:
        engine = EngagementStatsEngine()
        engine.emit("alice", "postView", 3, datetime(2024, 3, 1, 12, tzinfo=timezone.utc))
        response = engine.get_stats("alice", {"time_range": "7d"})

    Delivery is at-least-once: a duplicated event is counted twice.
    """

    def __init__(
        self,
        store: Optional[StatsStore] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Persistence collaborator, in-memory if omitted
            config: Engine configuration
            clock: Source of "now"; injectable for tests
        """
        self.store = store if store is not None else InMemoryStatsStore()
        self.config = config or EngineConfig()
        self.clock = clock or utc_now
        self.locks = KeyedLockRegistry()

        self.counters = CounterStore(
            self.store,
            locks=self.locks,
            clock=self.clock,
            underflow_history=self.config.underflow_history,
        )
        self.ledger = BucketLedger(self.store, config=self.config, locks=self.locks, clock=self.clock)
        self.growth_calculator = GrowthCalculator(self.ledger, clock=self.clock)
        self.query_service = QueryService(
            self.counters, self.ledger, self.growth_calculator, config=self.config, clock=self.clock
        )

        self._events_emitted = 0
        self._events_ignored = 0
        self._stats_lock = threading.Lock()

    # Producer interface

    def emit(self, user_id: str, metric: EventMetric, delta: int = 1, at: Optional[datetime] = None) -> None:
        """
        Apply one engagement event.

        Positive deltas move the running total and the day/week/month/year
        buckets. Negative deltas (unfollow, unsubscribe, unlike) only
        decrement the running total, clamped at zero. Zero is a no-op.

        Raises:
            ValueError: If the event is malformed
            PersistenceUnavailable: If the store fails; the event was not applied
                and may be retried as is
        """
        event = EngagementEvent(user_id=user_id, metric=metric, delta=delta, at=at or self.clock())
        self.emit_event(event)

    def emit_event(self, event: EngagementEvent) -> None:
        """Apply an already validated EngagementEvent."""
        if event.delta == 0:
            with self._stats_lock:
                self._events_ignored += 1
            return

        counter_field, bucket_field = EVENT_TARGETS[event.metric]

        if event.delta > 0:
            self.counters.increment(event.user_id, counter_field, event.delta)
            try:
                self.ledger.record_event(event.user_id, bucket_field, event.delta, event.at)
            except PersistenceUnavailable:
                self._undo_increment(event, counter_field)
                raise
        else:
            self.counters.decrement(event.user_id, counter_field, -event.delta)

        with self._stats_lock:
            self._events_emitted += 1
        EVENTS_RECORDED.labels(metric=event.metric.value).inc()

    def _undo_increment(self, event: EngagementEvent, counter_field: CounterField) -> None:
        """Take back a running-total increment whose day bucket was never written."""
        try:
            self.counters.decrement(event.user_id, counter_field, event.delta)
        except PersistenceUnavailable as e:
            logger.error(
                "Could not roll back running total",
                user_id=event.user_id,
                field=counter_field.value,
                delta=event.delta,
                error=str(e),
            )

    def increment_post_count(self, user_id: str, delta: int = 1) -> int:
        return self.counters.increment(user_id, CounterField.POSTS, delta)

    def decrement_post_count(self, user_id: str, delta: int = 1) -> int:
        return self.counters.decrement(user_id, CounterField.POSTS, delta)

    def increment_following(self, user_id: str, delta: int = 1) -> int:
        return self.counters.increment(user_id, CounterField.FOLLOWING, delta)

    def decrement_following(self, user_id: str, delta: int = 1) -> int:
        return self.counters.decrement(user_id, CounterField.FOLLOWING, delta)

    def increment_engagement(
        self,
        user_id: str,
        views: int = 0,
        likes: int = 0,
        comments: int = 0,
        at: Optional[datetime] = None,
    ) -> None:
        """Record a batch of post views, likes and comments at one instant."""
        if min(views, likes, comments) < 0:
            raise ValueError("Engagement increments must be non-negative")

        at = at or self.clock()
        for metric, delta in (
            (EventMetric.POST_VIEW, views),
            (EventMetric.LIKE, likes),
            (EventMetric.COMMENT, comments),
        ):
            if delta:
                self.emit(user_id, metric, delta, at)

    def record_custom_metric(self, user_id: str, name: str, delta: int = 1, at: Optional[datetime] = None) -> None:
        """
        Add to a bucket extension metric. Extension metrics roll up like any
        other field but have no running total.

        Raises:
            ValueError: If the name clashes with a built-in field or delta is not positive
        """
        if not user_id:
            raise ValueError("User id cannot be empty")
        if not name or name in BUCKET_FIELDS:
            raise ValueError(f"Invalid custom metric name: {name!r}")
        self.ledger.record_event(user_id, name, delta, at or self.clock())

    # Query interface

    def get_stats(self, user_id: str, filter_options: FilterInput = None) -> StatsResponse:
        return self.query_service.query(user_id, filter_options)

    def snapshot(self, user_id: str) -> UserStatsAggregate:
        return self.counters.snapshot(user_id)

    def growth(self, user_id: str, metric: StatsMetric, resolution: Resolution) -> GrowthMetric:
        return self.growth_calculator.growth(user_id, metric, resolution)

    def get_bucket(self, user_id: str, resolution: Resolution, period_key: str) -> Bucket:
        return self.ledger.get_bucket(user_id, resolution, period_key)

    # Bucket maintenance

    def close_bucket(self, user_id: str, resolution: Resolution, period_key: str) -> Bucket:
        return self.ledger.close_bucket(user_id, resolution, period_key)

    def close_expired_buckets(self, user_id: str) -> int:
        closed = self.ledger.close_expired(user_id)
        if closed:
            logger.info("Closed expired buckets", user_id=user_id, closed=closed)
        return closed

    def repair(self, user_id: str, resolution: Resolution, period_key: str) -> Bucket:
        return self.ledger.rollup.repair(user_id, resolution, period_key)

    def repair_pending(self) -> int:
        return self.ledger.rollup.repair_pending()

    # Health and stats

    def health_check(self) -> Dict[str, Any]:
        """Backend reachability and outstanding rollup repairs."""
        store_ok = self.store.ping()
        pending = len(self.ledger.rollup.pending)

        if not store_ok:
            status = "unhealthy"
        elif pending:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "store_connected": store_ok,
            "pending_repairs": pending,
        }

    def get_stats_summary(self) -> Dict[str, Any]:
        """Aggregate in-process counters of every component."""
        summary: Dict[str, Any] = {
            "events_emitted": self._events_emitted,
            "events_ignored": self._events_ignored,
            "counter_underflows": self.counters.underflow_count,
            "locks_held": self.locks.count(),
        }
        summary.update(self.ledger.get_stats())
        summary.update(self.query_service.get_stats())
        return summary
