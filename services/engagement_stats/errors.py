"""Error taxonomy for the engagement statistics engine.

Exceptions are raised for conditions the caller must act on. Conditions that
are recorded but never surfaced to producers (underflows, late writes) are
plain immutable records.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Tuple


class StatsEngineError(Exception):
    """Base class for engine errors."""
    pass


class InvalidFilter(StatsEngineError):
    """Raised when a stats query filter is rejected before touching state."""
    pass


class PersistenceUnavailable(StatsEngineError):
    """Raised when the store collaborator fails. Retryable."""
    retryable = True


class PropagationFailure(StatsEngineError):
    """Raised by rollup repair when coarser buckets could not be rebuilt.

    The keys stay queued for repair_pending(). The bucket ledger catches this
    once an event's day bucket is written, so producers never see it.

    Attributes:
        pending: (user_id, resolution, period_key) buckets still awaiting repair
    """
    retryable = True

    def __init__(self, message: str, pending: List[Tuple[str, str, str]]):
        super().__init__(message)
        self.pending = pending


@dataclass(frozen=True)
class CounterUnderflow:
    """A decrement that would have driven a counter below zero."""

    user_id: str
    field: str
    requested: int
    applied: int
    at: datetime


@dataclass(frozen=True)
class LateWriteDetected:
    """An event that landed in an already closed bucket."""

    user_id: str
    resolution: str
    period_key: str
    field: str
    delta: int
    event_at: datetime
