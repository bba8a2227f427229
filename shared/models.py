"""Shared data models for the engagement statistics pipeline.

This module contains the core data structures used throughout the pipeline
for representing engagement events, running totals, period buckets, growth
metrics and the query/response shapes served to the application.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field


class Resolution(str, Enum):
    """Granularity of bucket aggregation, finest first."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def rank(self) -> int:
        """Position in the day → week → month → year chain."""
        return RESOLUTIONS.index(self)


RESOLUTIONS = [Resolution.DAY, Resolution.WEEK, Resolution.MONTH, Resolution.YEAR]


class EventMetric(str, Enum):
    """Engagement metrics a producer may emit."""

    POST_VIEW = "postView"
    PROFILE_VIEW = "profileView"
    NEW_FOLLOWER = "newFollower"
    NEW_SUBSCRIBER = "newSubscriber"
    LIKE = "like"
    COMMENT = "comment"


class CounterField(str, Enum):
    """Running totals kept per user."""

    POSTS = "total_posts"
    FOLLOWERS = "total_followers"
    FOLLOWING = "total_following"
    SUBSCRIBERS = "total_subscribers"
    LIKES = "total_likes"
    COMMENTS = "total_comments"
    VIEWS = "total_views"


class StatsMetric(str, Enum):
    """Metric selector accepted by stats queries."""

    VIEWS = "views"
    ENGAGEMENT = "engagement"
    FOLLOWERS = "followers"
    SUBSCRIBERS = "subscribers"
    ALL = "all"


class TimeRange(str, Enum):
    """Time range presets accepted by stats queries."""

    LAST_24_HOURS = "24h"
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    LAST_90_DAYS = "90d"
    LAST_12_MONTHS = "12m"
    ALL = "all"
    CUSTOM = "custom"


# Numeric bucket fields; everything else on a Bucket is metadata or derived.
BUCKET_FIELDS = (
    "post_views",
    "profile_views",
    "new_followers",
    "new_subscribers",
    "likes",
    "comments",
)

# Where an emitted metric lands: (running total, bucket field).
EVENT_TARGETS: Dict[EventMetric, tuple] = {
    EventMetric.POST_VIEW: (CounterField.VIEWS, "post_views"),
    EventMetric.PROFILE_VIEW: (CounterField.VIEWS, "profile_views"),
    EventMetric.NEW_FOLLOWER: (CounterField.FOLLOWERS, "new_followers"),
    EventMetric.NEW_SUBSCRIBER: (CounterField.SUBSCRIBERS, "new_subscribers"),
    EventMetric.LIKE: (CounterField.LIKES, "likes"),
    EventMetric.COMMENT: (CounterField.COMMENTS, "comments"),
}


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing "Z" for UTC."""
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def engagement_rate(engagements: int, views: int) -> float:
    """Engagements per view as a percentage, 0.0 when there are no views."""
    if views <= 0:
        return 0.0
    return round(engagements / views * 100, 2)


@dataclass
class EngagementEvent:
    """A single engagement event emitted by the application.

    Attributes:
        user_id: The user whose counters the event affects
        metric: Which engagement metric moved
        delta: Signed change; negative deltas retract (unfollow, unlike)
        at: When the engagement happened
    """

    user_id: str
    metric: EventMetric
    delta: int = 1
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Validate and normalise event data."""
        if not self.user_id:
            raise ValueError("User id cannot be empty")
        try:
            self.metric = EventMetric(self.metric)
        except ValueError:
            raise ValueError(f"Unknown engagement metric: {self.metric}")
        if isinstance(self.delta, bool) or not isinstance(self.delta, int):
            raise ValueError("Delta must be an integer")
        if not isinstance(self.at, datetime):
            raise ValueError("Event timestamp must be a datetime")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngagementEvent":
        """Build an event from its JSON form.

        Raises:
            ValueError: If required keys are missing or values are invalid
        """
        try:
            at = data.get("at")
            return cls(
                user_id=str(data["user_id"]),
                metric=data["metric"],
                delta=int(data.get("delta", 1)),
                at=parse_timestamp(at) if at else datetime.now(timezone.utc),
            )
        except KeyError as e:
            raise ValueError(f"Missing required event field: {e}")
        except TypeError as e:
            raise ValueError(f"Invalid event data: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "metric": self.metric.value,
            "delta": self.delta,
            "at": self.at.isoformat(),
        }


@dataclass(frozen=True)
class UserStatsAggregate:
    """Immutable snapshot of a user's running totals.

    Attributes:
        user_id: Owner of the totals
        total_posts: Posts published
        total_followers: Current followers
        total_following: Accounts the user follows
        total_subscribers: Current subscribers
        total_likes: Likes received
        total_comments: Comments received
        total_views: Post and profile views received
        last_updated: Time of the most recent change, None for unseen users
    """

    user_id: str
    total_posts: int = 0
    total_followers: int = 0
    total_following: int = 0
    total_subscribers: int = 0
    total_likes: int = 0
    total_comments: int = 0
    total_views: int = 0
    last_updated: Optional[datetime] = None

    def __post_init__(self) -> None:
        """Validate that no counter is negative."""
        for counter in CounterField:
            if getattr(self, counter.value) < 0:
                raise ValueError(f"{counter.value} must be non-negative")

    @property
    def engagement_rate(self) -> float:
        return engagement_rate(self.total_likes + self.total_comments, self.total_views)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_posts": self.total_posts,
            "total_followers": self.total_followers,
            "total_following": self.total_following,
            "total_subscribers": self.total_subscribers,
            "total_likes": self.total_likes,
            "total_comments": self.total_comments,
            "total_views": self.total_views,
            "engagement_rate": self.engagement_rate,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class Bucket:
    """Accumulated engagement for one user, one resolution, one period.

    Attributes:
        user_id: Owner of the bucket
        resolution: Granularity of the period
        period_key: Canonical period identifier (e.g. 2024-03-01, 2024-W09)
        start: First instant of the period (UTC)
        end: First instant after the period (UTC)
        post_views: Views of the user's posts
        profile_views: Views of the user's profile
        new_followers: Followers gained
        new_subscribers: Subscribers gained
        likes: Likes received
        comments: Comments received
        extension: Forward-compatible metrics, summed on rollup
        closed: Whether the period is final for rollup purposes
        late_writes: Events applied after the bucket closed
        updated_at: Time of the last mutation
    """

    user_id: str
    resolution: Resolution
    period_key: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    post_views: int = 0
    profile_views: int = 0
    new_followers: int = 0
    new_subscribers: int = 0
    likes: int = 0
    comments: int = 0
    extension: Dict[str, int] = field(default_factory=dict)
    closed: bool = False
    late_writes: int = 0
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        """Ensure the extension map and resolution are properly initialized."""
        self.resolution = Resolution(self.resolution)
        if self.extension is None:
            self.extension = {}

    @property
    def total_views(self) -> int:
        return self.post_views + self.profile_views

    @property
    def total_engagement(self) -> int:
        return self.likes + self.comments

    @property
    def engagement_rate(self) -> float:
        return engagement_rate(self.total_engagement, self.total_views)

    def value_for(self, metric: StatsMetric) -> int:
        """Bucket value for a query metric selector."""
        metric = StatsMetric(metric)
        if metric == StatsMetric.VIEWS:
            return self.total_views
        if metric == StatsMetric.ENGAGEMENT:
            return self.total_engagement
        if metric == StatsMetric.FOLLOWERS:
            return self.new_followers
        if metric == StatsMetric.SUBSCRIBERS:
            return self.new_subscribers
        return self.total_views + self.total_engagement + self.new_followers + self.new_subscribers

    def add(self, field_name: str, delta: int) -> None:
        """Apply a delta to a numeric field or an extension metric."""
        if field_name in BUCKET_FIELDS:
            setattr(self, field_name, getattr(self, field_name) + delta)
        else:
            self.extension[field_name] = self.extension.get(field_name, 0) + delta

    def totals(self) -> Dict[str, int]:
        """All summable values, extension metrics included."""
        values = {name: getattr(self, name) for name in BUCKET_FIELDS}
        for name, value in self.extension.items():
            values[f"extension.{name}"] = value
        return values

    def to_document(self) -> Dict[str, Any]:
        """Serialise for a StatsStore."""
        doc: Dict[str, Any] = {name: getattr(self, name) for name in BUCKET_FIELDS}
        doc.update({
            "user_id": self.user_id,
            "resolution": self.resolution.value,
            "period_key": self.period_key,
            "extension": dict(self.extension),
            "closed": self.closed,
            "late_writes": self.late_writes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        })
        return doc

    @classmethod
    def from_document(
        cls,
        doc: Dict[str, Any],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> "Bucket":
        """Deserialise a StatsStore document."""
        updated_at = doc.get("updated_at")
        return cls(
            user_id=doc["user_id"],
            resolution=Resolution(doc["resolution"]),
            period_key=doc["period_key"],
            start=start,
            end=end,
            extension=dict(doc.get("extension") or {}),
            closed=bool(doc.get("closed", False)),
            late_writes=int(doc.get("late_writes", 0)),
            updated_at=parse_timestamp(updated_at) if updated_at else None,
            **{name: int(doc.get(name, 0)) for name in BUCKET_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Bucket snapshot as served by the query API."""
        return {
            "period_key": self.period_key,
            "resolution": self.resolution.value,
            "start_date": self.start.isoformat() if self.start else None,
            "end_date": self.end.isoformat() if self.end else None,
            "post_views": self.post_views,
            "profile_views": self.profile_views,
            "total_views": self.total_views,
            "new_followers": self.new_followers,
            "new_subscribers": self.new_subscribers,
            "likes": self.likes,
            "comments": self.comments,
            "total_engagement": self.total_engagement,
            "engagement_rate": self.engagement_rate,
            "extension": dict(self.extension),
        }


@dataclass(frozen=True)
class GrowthMetric:
    """Change of a metric between the current and the preceding period."""

    resolution: Resolution
    current_value: int
    previous_value: int
    percent_change: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolution": self.resolution.value,
            "current": self.current_value,
            "previous": self.previous_value,
            "percent_change": self.percent_change,
        }


@dataclass
class StatsFilterOptions:
    """Filtering and grouping options for statistics queries.

    Attributes:
        start_date: Inclusive range start (custom ranges)
        end_date: Inclusive range end (custom ranges)
        time_range: Preset range resolved relative to now
        group_by: Resolution of the returned series
        metric: Which metric the series reports
        cumulative: Report running totals instead of per-period values
    """

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    time_range: TimeRange = TimeRange.LAST_30_DAYS
    group_by: Resolution = Resolution.DAY
    metric: StatsMetric = StatsMetric.VIEWS
    cumulative: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "time_range": TimeRange(self.time_range).value,
            "group_by": Resolution(self.group_by).value,
            "metric": StatsMetric(self.metric).value,
            "cumulative": self.cumulative,
        }


@dataclass(frozen=True)
class StatsDataPoint:
    """Single data point of a statistics time series."""

    date: datetime
    value: int
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date.isoformat(), "value": self.value, "label": self.label}


@dataclass
class UserStatsSummary:
    """Aggregated statistics summary for profile display.

    Attributes:
        totals: Running totals at query time
        followers_growth: Follower growth at the requested resolution (percent)
        views_growth: View growth at the requested resolution (percent)
        engagement_growth: Engagement growth at the requested resolution (percent)
        growth: Growth of every metric at every resolution
        today: Current day bucket
        this_week: Current ISO week bucket
        this_month: Current month bucket
        this_year: Current year bucket
    """

    totals: UserStatsAggregate
    followers_growth: float
    views_growth: float
    engagement_growth: float
    growth: Dict[Resolution, Dict[StatsMetric, GrowthMetric]]
    today: Bucket
    this_week: Bucket
    this_month: Bucket
    this_year: Bucket

    def to_dict(self) -> Dict[str, Any]:
        summary = self.totals.to_dict()
        summary.update({
            "followers_growth": self.followers_growth,
            "views_growth": self.views_growth,
            "engagement_growth": self.engagement_growth,
            "growth": {
                resolution.value: {metric.value: g.to_dict() for metric, g in metrics.items()}
                for resolution, metrics in self.growth.items()
            },
            "today": self.today.to_dict(),
            "this_week": self.this_week.to_dict(),
            "this_month": self.this_month.to_dict(),
            "this_year": self.this_year.to_dict(),
        })
        return summary


@dataclass
class StatsResponse:
    """Complete statistics response: summary, series and the applied filter."""

    summary: UserStatsSummary
    data: List[StatsDataPoint]
    filter: StatsFilterOptions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "data": [point.to_dict() for point in self.data],
            "filter": self.filter.to_dict(),
        }
