"""Shared pytest fixtures for the engagement statistics tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set

import pytest

from .config import EngineConfig
from .engine import EngagementStatsEngine
from .errors import PersistenceUnavailable
from .stats_store import InMemoryStatsStore


class FixedClock:
    """Controllable clock; call it to read the current time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FlakyStore(InMemoryStatsStore):
    """In-memory store whose writes to selected key prefixes fail.

    ``failures`` puts per prefix are rejected before writes go through again;
    a negative count fails forever.
    """

    def __init__(self) -> None:
        super().__init__()
        self.failing: Dict[str, int] = {}
        self.failed_puts = 0
        self.reads_fail: Set[str] = set()

    def fail_puts(self, prefix: str, failures: int = -1) -> None:
        self.failing[prefix] = failures

    def heal(self) -> None:
        self.failing.clear()
        self.reads_fail.clear()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        if any(key.startswith(prefix) for prefix in self.reads_fail):
            raise PersistenceUnavailable(f"read failed for {key}")
        return super().get(key)

    def put(self, key: str, document: Dict[str, Any]) -> None:
        for prefix, remaining in list(self.failing.items()):
            if key.startswith(prefix) and remaining != 0:
                if remaining > 0:
                    self.failing[prefix] = remaining - 1
                self.failed_puts += 1
                raise PersistenceUnavailable(f"write failed for {key}")
        super().put(key, document)


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to Saturday 2024-03-02 12:00 UTC."""
    return FixedClock(datetime(2024, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine config without retry sleeps."""
    return EngineConfig(propagation_backoff_seconds=0.0, max_propagation_backoff_seconds=0.0)


@pytest.fixture
def store() -> InMemoryStatsStore:
    return InMemoryStatsStore()


@pytest.fixture
def engine(store, fast_config, clock) -> EngagementStatsEngine:
    return EngagementStatsEngine(store=store, config=fast_config, clock=clock)
