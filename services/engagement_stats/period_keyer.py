"""
Period Keying

Pure functions mapping instants to canonical UTC period identifiers for the
day, ISO week, month and year resolutions, plus the calendar arithmetic the
ledger and query layers build on.

Key formats (zero padded, so lexicographic order is chronological order):
    day    2024-03-01
    week   2024-W09   (ISO-8601 week-year and week number)
    month  2024-03
    year   2024
"""

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from shared.models import RESOLUTIONS, Resolution, TimeRange

UTC = timezone.utc

# Rollup containment: ISO weeks straddle month and year boundaries, so weeks
# and months are both built from days and years from months.
FINER_RESOLUTION: Dict[Resolution, Resolution] = {
    Resolution.WEEK: Resolution.DAY,
    Resolution.MONTH: Resolution.DAY,
    Resolution.YEAR: Resolution.MONTH,
}

PRESET_DAYS = {
    TimeRange.LAST_7_DAYS: 7,
    TimeRange.LAST_30_DAYS: 30,
    TimeRange.LAST_90_DAYS: 90,
}


def to_utc(instant: datetime) -> datetime:
    """Normalise an instant to an aware UTC datetime. Naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def period_key(instant: datetime, resolution: Resolution) -> str:
    """
    Canonical period identifier of an instant at a resolution.

    Args:
        instant: Any datetime; normalised to UTC first
        resolution: Target resolution

    Returns:
        Period key string
    """
    moment = to_utc(instant)
    resolution = Resolution(resolution)

    if resolution == Resolution.DAY:
        return f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
    if resolution == Resolution.WEEK:
        iso_year, iso_week, _ = moment.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    if resolution == Resolution.MONTH:
        return f"{moment.year:04d}-{moment.month:02d}"
    return f"{moment.year:04d}"


def period_keys_for(instant: datetime) -> Dict[Resolution, str]:
    """Period keys of an instant at every resolution."""
    return {resolution: period_key(instant, resolution) for resolution in RESOLUTIONS}


def period_start(instant: datetime, resolution: Resolution) -> datetime:
    """First instant of the period containing ``instant``."""
    moment = to_utc(instant)
    resolution = Resolution(resolution)
    day_start = datetime(moment.year, moment.month, moment.day, tzinfo=UTC)

    if resolution == Resolution.DAY:
        return day_start
    if resolution == Resolution.WEEK:
        return day_start - timedelta(days=day_start.weekday())
    if resolution == Resolution.MONTH:
        return datetime(moment.year, moment.month, 1, tzinfo=UTC)
    return datetime(moment.year, 1, 1, tzinfo=UTC)


def _shift_months(start: datetime, months: int) -> datetime:
    index = start.year * 12 + (start.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=UTC)


def next_period_start(start: datetime, resolution: Resolution) -> datetime:
    """First instant of the period following the one that begins at ``start``."""
    start = period_start(start, resolution)
    resolution = Resolution(resolution)

    if resolution == Resolution.DAY:
        return start + timedelta(days=1)
    if resolution == Resolution.WEEK:
        return start + timedelta(days=7)
    if resolution == Resolution.MONTH:
        return _shift_months(start, 1)
    return datetime(start.year + 1, 1, 1, tzinfo=UTC)


def period_bounds(instant: datetime, resolution: Resolution) -> Tuple[datetime, datetime]:
    """Half-open [start, end) interval of the period containing ``instant``."""
    start = period_start(instant, resolution)
    return start, next_period_start(start, resolution)


def period_start_from_key(key: str, resolution: Resolution) -> datetime:
    """
    Parse a period key back to the first instant of its period.

    Raises:
        ValueError: If the key does not match the resolution's format
    """
    resolution = Resolution(resolution)
    try:
        if resolution == Resolution.DAY:
            return datetime.strptime(key, "%Y-%m-%d").replace(tzinfo=UTC)
        if resolution == Resolution.WEEK:
            year, week = key.split("-W")
            monday = date.fromisocalendar(int(year), int(week), 1)
            return datetime(monday.year, monday.month, monday.day, tzinfo=UTC)
        if resolution == Resolution.MONTH:
            return datetime.strptime(key, "%Y-%m").replace(tzinfo=UTC)
        return datetime(int(key), 1, 1, tzinfo=UTC)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {resolution.value} period key: {key!r}") from e


def previous_period_key(key: str, resolution: Resolution) -> str:
    """Key of the period immediately preceding ``key`` at the same resolution."""
    start = period_start_from_key(key, resolution)
    return period_key(start - timedelta(microseconds=1), resolution)


def iter_period_keys(start: datetime, end: datetime, resolution: Resolution) -> Iterator[str]:
    """Ordered keys of every period overlapping the inclusive range [start, end]."""
    cursor = period_start(start, resolution)
    end = to_utc(end)
    while cursor <= end:
        yield period_key(cursor, resolution)
        cursor = next_period_start(cursor, resolution)


def finer_resolution(resolution: Resolution) -> Optional[Resolution]:
    """Resolution whose buckets sum to a bucket of ``resolution``; None for days."""
    return FINER_RESOLUTION.get(Resolution(resolution))


def child_period_keys(key: str, resolution: Resolution) -> List[str]:
    """
    Keys of the finer periods contained in a period.

    Raises:
        ValueError: If the resolution has no finer resolution (day)
    """
    child = finer_resolution(resolution)
    if child is None:
        raise ValueError(f"{Resolution(resolution).value} buckets have no children")

    start = period_start_from_key(key, resolution)
    end = next_period_start(start, resolution)
    return list(iter_period_keys(start, end - timedelta(microseconds=1), child))


def period_label(start: datetime, resolution: Resolution) -> str:
    """Short human-readable label for a series point."""
    resolution = Resolution(resolution)
    if resolution == Resolution.DAY:
        return start.strftime("%b %d")
    if resolution == Resolution.WEEK:
        return period_key(start, resolution)
    if resolution == Resolution.MONTH:
        return start.strftime("%b %Y")
    return start.strftime("%Y")


def resolve_time_range(
    time_range: TimeRange,
    now: datetime,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    earliest: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """
    Resolve a time range preset to concrete UTC bounds relative to ``now``.

    Day-based presets include today, so ``7d`` spans today and the six
    previous days. ``12m`` spans the current and eleven previous calendar
    months. ``all`` starts at ``earliest`` (the first recorded activity).

    Raises:
        ValueError: If a custom range lacks either bound
    """
    time_range = TimeRange(time_range)
    now = to_utc(now)
    today = period_start(now, Resolution.DAY)

    if time_range == TimeRange.CUSTOM:
        if start_date is None or end_date is None:
            raise ValueError("Custom time range requires start_date and end_date")
        return to_utc(start_date), to_utc(end_date)

    if time_range == TimeRange.LAST_24_HOURS:
        return now - timedelta(hours=24), now

    if time_range in PRESET_DAYS:
        return today - timedelta(days=PRESET_DAYS[time_range] - 1), now

    if time_range == TimeRange.LAST_12_MONTHS:
        return _shift_months(period_start(now, Resolution.MONTH), -11), now

    return (to_utc(earliest) if earliest else today), now
