"""Unit tests for UTC period keying and calendar arithmetic."""

import pytest
from datetime import datetime, timedelta, timezone

from shared.models import Resolution, TimeRange
from services.engagement_stats.period_keyer import (
    child_period_keys,
    iter_period_keys,
    next_period_start,
    period_bounds,
    period_key,
    period_keys_for,
    period_label,
    period_start_from_key,
    previous_period_key,
    resolve_time_range,
)

UTC = timezone.utc


class TestPeriodKey:
    """Test canonical period keys."""

    def test_keys_for_all_resolutions(self):
        """Test keys of one instant at every resolution."""
        keys = period_keys_for(datetime(2024, 3, 1, 12, 30, tzinfo=UTC))

        assert keys == {
            Resolution.DAY: "2024-03-01",
            Resolution.WEEK: "2024-W09",
            Resolution.MONTH: "2024-03",
            Resolution.YEAR: "2024",
        }

    def test_naive_datetime_is_utc(self):
        """Test that naive datetimes are bucketed as UTC."""
        assert period_key(datetime(2024, 3, 1, 23, 59), Resolution.DAY) == "2024-03-01"

    def test_aware_datetime_converted_to_utc(self):
        """Test that an evening in UTC-5 lands on the next UTC day."""
        eastern = timezone(timedelta(hours=-5))
        instant = datetime(2024, 3, 1, 21, 0, tzinfo=eastern)

        assert period_key(instant, Resolution.DAY) == "2024-03-02"

    def test_iso_week_year_boundaries(self):
        """Test ISO week keys around new year."""
        assert period_key(datetime(2021, 1, 1, tzinfo=UTC), Resolution.WEEK) == "2020-W53"
        assert period_key(datetime(2024, 12, 30, tzinfo=UTC), Resolution.WEEK) == "2025-W01"
        assert period_key(datetime(2024, 1, 1, tzinfo=UTC), Resolution.WEEK) == "2024-W01"

    def test_week_starts_on_monday(self):
        """Test that Sunday and the following Monday fall in different weeks."""
        sunday = datetime(2024, 3, 3, 23, 59, tzinfo=UTC)
        monday = datetime(2024, 3, 4, 0, 0, tzinfo=UTC)

        assert period_key(sunday, Resolution.WEEK) == "2024-W09"
        assert period_key(monday, Resolution.WEEK) == "2024-W10"

    def test_keys_are_monotonic(self):
        """Test that lexicographic order of keys is chronological order."""
        start = datetime(2019, 12, 20, tzinfo=UTC)
        for resolution in Resolution:
            keys = [period_key(start + timedelta(days=offset), resolution) for offset in range(0, 800, 3)]
            assert keys == sorted(keys)


class TestPeriodArithmetic:
    """Test bounds, neighbours and containment."""

    def test_bounds(self):
        """Test half-open bounds of each resolution."""
        instant = datetime(2024, 2, 29, 15, 0, tzinfo=UTC)

        assert period_bounds(instant, Resolution.DAY) == (
            datetime(2024, 2, 29, tzinfo=UTC), datetime(2024, 3, 1, tzinfo=UTC)
        )
        assert period_bounds(instant, Resolution.WEEK) == (
            datetime(2024, 2, 26, tzinfo=UTC), datetime(2024, 3, 4, tzinfo=UTC)
        )
        assert period_bounds(instant, Resolution.MONTH) == (
            datetime(2024, 2, 1, tzinfo=UTC), datetime(2024, 3, 1, tzinfo=UTC)
        )
        assert period_bounds(instant, Resolution.YEAR) == (
            datetime(2024, 1, 1, tzinfo=UTC), datetime(2025, 1, 1, tzinfo=UTC)
        )

    def test_next_period_start_rolls_over_year(self):
        """Test month arithmetic across december."""
        assert next_period_start(datetime(2023, 12, 15, tzinfo=UTC), Resolution.MONTH) == datetime(2024, 1, 1, tzinfo=UTC)

    def test_start_from_key(self):
        """Test parsing keys back to period starts."""
        assert period_start_from_key("2024-W09", Resolution.WEEK) == datetime(2024, 2, 26, tzinfo=UTC)
        assert period_start_from_key("2024-03", Resolution.MONTH) == datetime(2024, 3, 1, tzinfo=UTC)
        assert period_start_from_key("2024", Resolution.YEAR) == datetime(2024, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize("key,resolution", [
        ("2024-13", Resolution.MONTH),
        ("2024-03", Resolution.WEEK),
        ("2024-W09", Resolution.DAY),
        ("next", Resolution.YEAR),
    ])
    def test_invalid_keys_rejected(self, key, resolution):
        """Test that malformed keys raise ValueError."""
        with pytest.raises(ValueError):
            period_start_from_key(key, resolution)

    def test_previous_period_key(self):
        """Test the immediately preceding period at each resolution."""
        assert previous_period_key("2024-03-01", Resolution.DAY) == "2024-02-29"
        assert previous_period_key("2024-W01", Resolution.WEEK) == "2023-W52"
        assert previous_period_key("2024-01", Resolution.MONTH) == "2023-12"
        assert previous_period_key("2024", Resolution.YEAR) == "2023"

    def test_child_keys(self):
        """Test containment of weeks, months and years."""
        week_days = child_period_keys("2024-W09", Resolution.WEEK)
        assert week_days == [
            "2024-02-26", "2024-02-27", "2024-02-28", "2024-02-29",
            "2024-03-01", "2024-03-02", "2024-03-03",
        ]

        assert len(child_period_keys("2024-02", Resolution.MONTH)) == 29
        assert child_period_keys("2024", Resolution.YEAR) == [f"2024-{m:02d}" for m in range(1, 13)]

    def test_day_has_no_children(self):
        """Test that day buckets cannot be decomposed."""
        with pytest.raises(ValueError):
            child_period_keys("2024-03-01", Resolution.DAY)

    def test_iter_period_keys_inclusive(self):
        """Test that both range ends are included."""
        keys = list(iter_period_keys(
            datetime(2024, 1, 15, tzinfo=UTC), datetime(2024, 3, 1, tzinfo=UTC), Resolution.MONTH
        ))
        assert keys == ["2024-01", "2024-02", "2024-03"]

    def test_labels(self):
        """Test series labels."""
        assert period_label(datetime(2024, 3, 1, tzinfo=UTC), Resolution.DAY) == "Mar 01"
        assert period_label(datetime(2024, 2, 26, tzinfo=UTC), Resolution.WEEK) == "2024-W09"
        assert period_label(datetime(2024, 3, 1, tzinfo=UTC), Resolution.MONTH) == "Mar 2024"
        assert period_label(datetime(2024, 1, 1, tzinfo=UTC), Resolution.YEAR) == "2024"


class TestResolveTimeRange:
    """Test time range presets."""

    def setup_method(self):
        """Set up test fixtures."""
        self.now = datetime(2024, 3, 2, 12, 0, tzinfo=UTC)

    def test_seven_days_includes_today(self):
        """Test that 7d spans today and the six days before."""
        start, end = resolve_time_range(TimeRange.LAST_7_DAYS, self.now)

        assert start == datetime(2024, 2, 25, tzinfo=UTC)
        assert end == self.now
        assert len(list(iter_period_keys(start, end, Resolution.DAY))) == 7

    def test_last_24_hours(self):
        """Test the rolling 24 hour window."""
        start, end = resolve_time_range(TimeRange.LAST_24_HOURS, self.now)
        assert end - start == timedelta(hours=24)

    def test_twelve_months(self):
        """Test that 12m spans the current and eleven previous months."""
        start, _ = resolve_time_range(TimeRange.LAST_12_MONTHS, self.now)

        assert start == datetime(2023, 4, 1, tzinfo=UTC)
        assert len(list(iter_period_keys(start, self.now, Resolution.MONTH))) == 12

    def test_all_starts_at_earliest(self):
        """Test that 'all' starts at the earliest activity."""
        earliest = datetime(2022, 6, 1, tzinfo=UTC)
        start, _ = resolve_time_range(TimeRange.ALL, self.now, earliest=earliest)
        assert start == earliest

    def test_custom_requires_both_bounds(self):
        """Test that custom ranges need start and end."""
        with pytest.raises(ValueError):
            resolve_time_range(TimeRange.CUSTOM, self.now, start_date=self.now)

        start, end = resolve_time_range(
            TimeRange.CUSTOM, self.now,
            start_date=datetime(2024, 1, 1), end_date=datetime(2024, 1, 31),
        )
        assert start == datetime(2024, 1, 1, tzinfo=UTC)
        assert end == datetime(2024, 1, 31, tzinfo=UTC)
