"""Engagement statistics service.

This package aggregates engagement events into running totals and
day/week/month/year rollups and answers statistics queries over them.
"""

from .engine import EngagementStatsEngine
from .config import EngineConfig, create_engine_config
from .errors import (
    CounterUnderflow,
    InvalidFilter,
    LateWriteDetected,
    PersistenceUnavailable,
    PropagationFailure,
    StatsEngineError,
)
from .stats_store import InMemoryStatsStore, RedisStatsStore

__all__ = [
    'EngagementStatsEngine',
    'EngineConfig',
    'create_engine_config',
    'CounterUnderflow',
    'InvalidFilter',
    'LateWriteDetected',
    'PersistenceUnavailable',
    'PropagationFailure',
    'StatsEngineError',
    'InMemoryStatsStore',
    'RedisStatsStore',
]
