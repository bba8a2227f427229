"""Shared modules for the engagement statistics pipeline."""

from .models import (
    Bucket,
    CounterField,
    EngagementEvent,
    EventMetric,
    GrowthMetric,
    Resolution,
    StatsDataPoint,
    StatsFilterOptions,
    StatsMetric,
    StatsResponse,
    TimeRange,
    UserStatsAggregate,
    UserStatsSummary,
)

__all__ = [
    "Bucket",
    "CounterField",
    "EngagementEvent",
    "EventMetric",
    "GrowthMetric",
    "Resolution",
    "StatsDataPoint",
    "StatsFilterOptions",
    "StatsMetric",
    "StatsResponse",
    "TimeRange",
    "UserStatsAggregate",
    "UserStatsSummary",
]
