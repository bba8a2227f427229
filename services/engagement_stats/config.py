"""Configuration for the engagement statistics engine."""

import os
from dataclasses import dataclass


@dataclass
class EngineConfig:
    """Configuration parameters for the aggregation engine."""

    # Buckets stay open this long after their period ends
    late_write_grace_seconds: int = 86400

    # Rollup propagation retries
    max_propagation_retries: int = 3
    propagation_backoff_seconds: float = 0.05
    propagation_backoff_multiplier: float = 2.0
    max_propagation_backoff_seconds: float = 1.0

    # Query limits
    max_series_points: int = 1000

    # Underflow records kept for inspection
    underflow_history: int = 100

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.late_write_grace_seconds < 0:
            raise ValueError("Late write grace window must be non-negative")

        if self.max_propagation_retries < 0:
            raise ValueError("Propagation retries must be non-negative")

        if self.propagation_backoff_seconds < 0 or self.max_propagation_backoff_seconds < 0:
            raise ValueError("Propagation backoff must be non-negative")

        if self.propagation_backoff_multiplier < 1.0:
            raise ValueError("Backoff multiplier must be at least 1.0")

        if self.max_series_points < 1:
            raise ValueError("Maximum series points must be at least 1")

        if self.underflow_history < 1:
            raise ValueError("Underflow history must be at least 1")


def create_engine_config(
    grace_seconds: int = 86400,
    max_retries: int = 3,
    backoff_seconds: float = 0.05,
    max_series_points: int = 1000,
) -> EngineConfig:
    """
    Create an engine configuration with common parameters.

    Args:
        grace_seconds: Seconds after a period ends before its buckets close
        max_retries: Propagation retries before escalating to repair
        backoff_seconds: Initial delay between propagation retries
        max_series_points: Largest series a single query may request

    Returns:
        Configured EngineConfig object
    """
    return EngineConfig(
        late_write_grace_seconds=grace_seconds,
        max_propagation_retries=max_retries,
        propagation_backoff_seconds=backoff_seconds,
        max_series_points=max_series_points,
    )


def load_engine_config_from_env() -> EngineConfig:
    """Build an EngineConfig from STATS_* environment variables."""
    return create_engine_config(
        grace_seconds=int(os.getenv("STATS_LATE_WRITE_GRACE_SECONDS", "86400")),
        max_retries=int(os.getenv("STATS_MAX_PROPAGATION_RETRIES", "3")),
        backoff_seconds=float(os.getenv("STATS_PROPAGATION_BACKOFF_SECONDS", "0.05")),
        max_series_points=int(os.getenv("STATS_MAX_SERIES_POINTS", "1000")),
    )
