"""Unit tests for growth metrics."""

import pytest
from datetime import datetime, timezone

from shared.models import Resolution, StatsMetric
from services.engagement_stats.bucket_ledger import BucketLedger
from services.engagement_stats.growth_calculator import GrowthCalculator, percent_change
from services.engagement_stats.stats_store import InMemoryStatsStore

UTC = timezone.utc


class TestPercentChange:
    """Test the growth conventions."""

    @pytest.mark.parametrize("current,previous,expected", [
        (5, 0, 100.0),
        (0, 0, 0.0),
        (15, 10, 50.0),
        (5, 10, -50.0),
        (10, 10, 0.0),
        (1, 3, -66.67),
    ])
    def test_percent_change(self, current, previous, expected):
        """Test percent change including the zero-baseline conventions."""
        assert percent_change(current, previous) == expected


class TestGrowthCalculator:
    """Test growth between adjacent periods."""

    @pytest.fixture(autouse=True)
    def setup(self, clock, fast_config):
        """Set up test fixtures."""
        self.ledger = BucketLedger(InMemoryStatsStore(), config=fast_config, clock=clock)
        self.growth = GrowthCalculator(self.ledger, clock=clock)

    def test_weekly_growth(self):
        """Test growth of this week over last week."""
        for _ in range(10):
            self.ledger.record_event("alice", "post_views", 1, datetime(2024, 2, 20, tzinfo=UTC))
        for _ in range(15):
            self.ledger.record_event("alice", "post_views", 1, datetime(2024, 3, 1, tzinfo=UTC))

        growth = self.growth.growth("alice", StatsMetric.VIEWS, Resolution.WEEK)

        assert growth.resolution == Resolution.WEEK
        assert growth.current_value == 15
        assert growth.previous_value == 10
        assert growth.percent_change == 50.0

    def test_growth_from_nothing(self):
        """Test growth with an empty previous period."""
        self.ledger.record_event("alice", "new_followers", 5, datetime(2024, 3, 2, tzinfo=UTC))

        growth = self.growth.growth("alice", StatsMetric.FOLLOWERS, Resolution.DAY)

        assert growth.previous_value == 0
        assert growth.current_value == 5
        assert growth.percent_change == 100.0

    def test_no_activity(self):
        """Test growth of a user without events."""
        growth = self.growth.growth("nobody", StatsMetric.ENGAGEMENT, Resolution.MONTH)
        assert growth.percent_change == 0.0

    def test_engagement_metric(self):
        """Test that engagement counts likes and comments."""
        self.ledger.record_event("alice", "likes", 2, datetime(2024, 2, 10, tzinfo=UTC))
        self.ledger.record_event("alice", "likes", 2, datetime(2024, 3, 1, tzinfo=UTC))
        self.ledger.record_event("alice", "comments", 1, datetime(2024, 3, 1, tzinfo=UTC))

        growth = self.growth.growth("alice", StatsMetric.ENGAGEMENT, Resolution.MONTH)

        assert growth.current_value == 3
        assert growth.previous_value == 2
        assert growth.percent_change == 50.0

    def test_explicit_reference_time(self):
        """Test growth for a period other than the current one."""
        self.ledger.record_event("alice", "post_views", 4, datetime(2023, 5, 1, tzinfo=UTC))

        growth = self.growth.growth(
            "alice", StatsMetric.VIEWS, Resolution.YEAR, now=datetime(2024, 1, 15, tzinfo=UTC)
        )

        assert growth.current_value == 0
        assert growth.previous_value == 4
        assert growth.percent_change == -100.0

    def test_growth_table_covers_everything(self):
        """Test growth of every metric at every resolution."""
        table = self.growth.growth_table("alice")

        assert set(table) == set(Resolution)
        assert all(set(metrics) == set(StatsMetric) for metrics in table.values())
