"""
Cache value objects: per-key state, stored entries, lookup outcomes, stats.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

V = TypeVar("V")


class KeyState(str, Enum):
    """
    Lifecycle of one key.

    ABSENT -> COMPUTING -> READY -> STALE -> COMPUTING -> READY
    COMPUTING -> FAILED -> ABSENT (FAILED is never observable afterwards)
    """

    ABSENT = "absent"
    COMPUTING = "computing"
    READY = "ready"
    STALE = "stale"
    FAILED = "failed"


class CacheOutcome(str, Enum):
    """How a lookup was served."""

    HIT = "hit"  # fresh entry
    MISS = "miss"  # this caller started the computation
    FORCED = "forced"  # force=True started the computation
    COALESCED = "coalesced"  # joined an in-flight computation
    STALE = "stale"  # stale snapshot served while a recompute runs

    @property
    def from_cache(self) -> bool:
        return self in (CacheOutcome.HIT, CacheOutcome.STALE)


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A stored value. ``started_at``/``expires_at`` are monotonic clock readings."""

    value: V
    started_at: float
    expires_at: float
    stored_at: datetime

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class Flight:
    """One in-flight computation. A detached flight delivers but never stores."""

    started_at: float
    stored_at: datetime
    task: asyncio.Task | None = None
    detached: bool = False


@dataclass(frozen=True)
class CacheLookup(Generic[V]):
    """Value returned by ``get_or_compute`` plus how it was obtained."""

    value: V
    outcome: CacheOutcome
    stored_at: datetime | None = None

    @property
    def cache_hit(self) -> bool:
        return self.outcome.from_cache


@dataclass
class PrefetchStats:
    enqueued: int = 0
    dropped: int = 0
    skipped: int = 0
    completed: int = 0
    failed: int = 0
    queue_depth: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "enqueued": self.enqueued,
            "dropped": self.dropped,
            "skipped": self.skipped,
            "completed": self.completed,
            "failed": self.failed,
            "queue_depth": self.queue_depth,
        }


@dataclass
class CacheStats:
    """Counters since construction (or the last ``reset_stats``)."""

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    stale_serves: int = 0
    computations: int = 0
    failures: int = 0
    discarded: int = 0
    evictions: int = 0
    expired: int = 0
    size: int = 0
    in_flight: int = 0
    prefetch: PrefetchStats = field(default_factory=PrefetchStats)

    @property
    def lookups(self) -> int:
        return self.hits + self.misses + self.coalesced + self.stale_serves

    @property
    def hit_rate(self) -> float:
        """Share of lookups served from a stored entry (fresh or stale)."""
        lookups = self.lookups
        return (self.hits + self.stale_serves) / lookups if lookups else 0.0

    @property
    def error_rate(self) -> float:
        attempts = self.computations + self.failures
        return self.failures / attempts if attempts else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
            "stale_serves": self.stale_serves,
            "computations": self.computations,
            "failures": self.failures,
            "discarded": self.discarded,
            "evictions": self.evictions,
            "expired": self.expired,
            "in_flight": self.in_flight,
            "hit_rate": round(self.hit_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "prefetch": self.prefetch.to_dict(),
        }
