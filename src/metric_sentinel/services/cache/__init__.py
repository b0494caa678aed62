"""Coalescing cache and prefetch queue."""

from metric_sentinel.services.cache.coalescing import CoalescingCache, key_matches
from metric_sentinel.services.cache.models import (
    CacheEntry,
    CacheLookup,
    CacheOutcome,
    CacheStats,
    KeyState,
    PrefetchStats,
)
from metric_sentinel.services.cache.prefetch import PrefetchQueue

__all__ = [
    "CoalescingCache",
    "key_matches",
    "PrefetchQueue",
    "CacheEntry",
    "CacheLookup",
    "CacheOutcome",
    "CacheStats",
    "KeyState",
    "PrefetchStats",
]
