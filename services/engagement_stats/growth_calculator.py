"""
Growth Calculator

Period-over-period change of a metric, comparing the bucket of the current
period with the bucket of the immediately preceding period at the same
resolution.
"""

from datetime import datetime
from typing import Callable, Dict, Optional

from shared.models import RESOLUTIONS, GrowthMetric, Resolution, StatsMetric

from .period_keyer import period_key, previous_period_key, utc_now


def percent_change(current: int, previous: int) -> float:
    """
    Percent change from ``previous`` to ``current``, rounded to 2 decimals.

    A zero baseline reports 100.0 for any growth and 0.0 when both are zero.
    """
    if previous > 0:
        growth_rate = ((current - previous) / previous) * 100
    elif current > 0:
        growth_rate = 100.0
    else:
        growth_rate = 0.0
    return round(growth_rate, 2)


class GrowthCalculator:
    """Growth metrics derived from a BucketLedger."""

    def __init__(self, ledger, clock: Callable[[], datetime] = utc_now):
        self.ledger = ledger
        self.clock = clock

    def growth(
        self,
        user_id: str,
        metric: StatsMetric,
        resolution: Resolution,
        now: Optional[datetime] = None,
    ) -> GrowthMetric:
        """
        Growth of ``metric`` for the period containing ``now``.

        Args:
            user_id: Owner of the buckets
            metric: Metric selector (views, engagement, followers, ...)
            resolution: Period granularity to compare
            now: Reference instant, defaults to the clock

        Returns:
            GrowthMetric with current, previous and percent change
        """
        metric = StatsMetric(metric)
        resolution = Resolution(resolution)

        current_key = period_key(now or self.clock(), resolution)
        previous_key = previous_period_key(current_key, resolution)

        current = self.ledger.get_bucket(user_id, resolution, current_key).value_for(metric)
        previous = self.ledger.get_bucket(user_id, resolution, previous_key).value_for(metric)

        return GrowthMetric(
            resolution=resolution,
            current_value=current,
            previous_value=previous,
            percent_change=percent_change(current, previous),
        )

    def growth_table(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[Resolution, Dict[StatsMetric, GrowthMetric]]:
        """Growth of every metric at every resolution."""
        now = now or self.clock()
        return {
            resolution: {
                metric: self.growth(user_id, metric, resolution, now)
                for metric in StatsMetric
            }
            for resolution in RESOLUTIONS
        }
