"""
Query Service

Answers statistics queries: validates the filter, builds a zero-filled time
series at the requested resolution and attaches a summary of running totals,
growth and the current day/week/month/year buckets.
"""

import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from shared.models import (
    RESOLUTIONS,
    Resolution,
    StatsDataPoint,
    StatsFilterOptions,
    StatsMetric,
    StatsResponse,
    TimeRange,
    UserStatsSummary,
    parse_timestamp,
)

from .config import EngineConfig
from .counter_store import CounterStore
from .errors import InvalidFilter
from .growth_calculator import GrowthCalculator
from .metrics import QUERY_TIME
from .period_keyer import (
    iter_period_keys,
    period_key,
    period_label,
    period_start_from_key,
    resolve_time_range,
    to_utc,
    utc_now,
)

logger = structlog.get_logger(__name__)

FilterInput = Union[StatsFilterOptions, Dict[str, Any], None]


def _parse_date(value: Any, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    try:
        return to_utc(parse_timestamp(str(value)))
    except ValueError:
        raise InvalidFilter(f"{name} is not an ISO-8601 date: {value!r}")


def _parse_enum(enum_cls, value: Any, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidFilter(f"Unsupported {name} {value!r}; expected one of: {allowed}")


class QueryService:
    """
    Read side of the engine.

    Usage:
        service = QueryService(counters, ledger, growth, config)
        response = service.query("alice", {"time_range": "7d", "metric": "views"})
    """

    def __init__(
        self,
        counters: CounterStore,
        ledger,
        growth: GrowthCalculator,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.counters = counters
        self.ledger = ledger
        self.growth = growth
        self.config = config or EngineConfig()
        self.clock = clock

        self._queries_served = 0
        self._stats_lock = threading.Lock()

    def normalize_filter(self, filter_options: FilterInput) -> StatsFilterOptions:
        """
        Coerce and validate a filter.

        Accepts a StatsFilterOptions, a plain dict (query parameters, camelCase
        or snake_case keys) or None for the defaults.

        Raises:
            InvalidFilter: If any option is out of range
        """
        if filter_options is None:
            filter_options = StatsFilterOptions()

        if isinstance(filter_options, dict):
            raw = filter_options

            def get(snake: str, camel: str, default: Any = None) -> Any:
                return raw.get(snake, raw.get(camel, default))

            cumulative = get("cumulative", "cumulative", False)
            if isinstance(cumulative, str):
                cumulative = cumulative.lower() in ("1", "true", "yes")
            filter_options = StatsFilterOptions(
                start_date=get("start_date", "startDate"),
                end_date=get("end_date", "endDate"),
                time_range=get("time_range", "timeRange", TimeRange.LAST_30_DAYS),
                group_by=get("group_by", "groupBy", Resolution.DAY),
                metric=get("metric", "metric", StatsMetric.VIEWS),
                cumulative=bool(cumulative),
            )

        normalized = StatsFilterOptions(
            start_date=_parse_date(filter_options.start_date, "start_date"),
            end_date=_parse_date(filter_options.end_date, "end_date"),
            time_range=_parse_enum(TimeRange, filter_options.time_range, "time_range"),
            group_by=_parse_enum(Resolution, filter_options.group_by, "group_by"),
            metric=_parse_enum(StatsMetric, filter_options.metric, "metric"),
            cumulative=bool(filter_options.cumulative),
        )

        if normalized.time_range == TimeRange.CUSTOM:
            if normalized.start_date is None or normalized.end_date is None:
                raise InvalidFilter("Custom time range requires start_date and end_date")

        if normalized.start_date and normalized.end_date and normalized.start_date > normalized.end_date:
            raise InvalidFilter("start_date must not be after end_date")

        return normalized

    def _bounds(self, user_id: str, options: StatsFilterOptions, now: datetime):
        earliest = None
        if options.time_range == TimeRange.ALL:
            earliest_key = self.ledger.earliest_period_key(user_id, Resolution.DAY)
            if earliest_key:
                earliest = period_start_from_key(earliest_key, Resolution.DAY)

        try:
            return resolve_time_range(
                options.time_range,
                now,
                start_date=options.start_date,
                end_date=options.end_date,
                earliest=earliest,
            )
        except ValueError as e:
            raise InvalidFilter(str(e))

    def _series_keys(self, start: datetime, end: datetime, resolution: Resolution) -> List[str]:
        keys = []
        for key in iter_period_keys(start, end, resolution):
            keys.append(key)
            if len(keys) > self.config.max_series_points:
                raise InvalidFilter(
                    f"Query spans more than {self.config.max_series_points} {resolution.value} points; "
                    "narrow the range or use a coarser group_by"
                )
        return keys

    def build_series(
        self,
        user_id: str,
        keys: List[str],
        resolution: Resolution,
        metric: StatsMetric,
        cumulative: bool = False,
    ) -> List[StatsDataPoint]:
        """
        One data point per period key, missing buckets reported as zero.

        Every bucket is read exactly once and values are never negative, so a
        cumulative series never decreases.
        """
        points = []
        running = 0
        for key in keys:
            start = period_start_from_key(key, resolution)
            value = self.ledger.get_bucket(user_id, resolution, key).value_for(metric)
            if cumulative:
                running += value
                value = running
            points.append(StatsDataPoint(date=start, value=value, label=period_label(start, resolution)))
        return points

    def summary(self, user_id: str, resolution: Resolution, now: Optional[datetime] = None) -> UserStatsSummary:
        """Totals, growth and current buckets of a user."""
        now = now or self.clock()
        growth = self.growth.growth_table(user_id, now)
        requested = growth[Resolution(resolution)]
        current = {
            res: self.ledger.get_bucket(user_id, res, period_key(now, res))
            for res in RESOLUTIONS
        }

        return UserStatsSummary(
            totals=self.counters.snapshot(user_id),
            followers_growth=requested[StatsMetric.FOLLOWERS].percent_change,
            views_growth=requested[StatsMetric.VIEWS].percent_change,
            engagement_growth=requested[StatsMetric.ENGAGEMENT].percent_change,
            growth=growth,
            today=current[Resolution.DAY],
            this_week=current[Resolution.WEEK],
            this_month=current[Resolution.MONTH],
            this_year=current[Resolution.YEAR],
        )

    def query(self, user_id: str, filter_options: FilterInput = None) -> StatsResponse:
        """
        Statistics for a user.

        Args:
            user_id: User to report on
            filter_options: Range, grouping and metric selection

        Returns:
            StatsResponse with summary, series and the normalised filter

        Raises:
            InvalidFilter: If the filter is rejected (no state is read)
            PersistenceUnavailable: If the store fails
        """
        if not user_id:
            raise InvalidFilter("User id cannot be empty")

        options = self.normalize_filter(filter_options)

        with QUERY_TIME.time():
            now = self.clock()
            start, end = self._bounds(user_id, options, now)
            keys = self._series_keys(start, end, options.group_by)

            data = self.build_series(user_id, keys, options.group_by, options.metric, options.cumulative)
            summary = self.summary(user_id, options.group_by, now)

        with self._stats_lock:
            self._queries_served += 1
        logger.debug(
            "Stats query served",
            user_id=user_id,
            time_range=options.time_range.value,
            group_by=options.group_by.value,
            metric=options.metric.value,
            points=len(data),
        )

        return StatsResponse(summary=summary, data=data, filter=options)

    def get_stats(self) -> Dict[str, int]:
        return {"queries_served": self._queries_served}
