"""
Coalescing Cache.

TTL cache with single-flight computation per key:

- A fresh entry is returned directly.
- Otherwise the first caller installs a flight (an asyncio task running
  ``compute_fn``) and every concurrent caller for that key awaits the same
  task. The check-and-install runs without an intervening ``await``, so it
  is atomic on the event loop and no lock is held across I/O.
- Callers joining another caller's flight are bounded by a timeout. The
  caller that installed the flight waits for it unless it passed an explicit
  timeout. A waiter that times out or is cancelled
  leaves the shared computation running; it still stores its result.
- A failed computation removes the entry and propagates the error to every
  waiter of that flight.
- ``invalidate`` detaches matching flights: their waiters still get the
  result, but it is not stored.

Entries are ordered by ``started_at`` (computation start); a store never
replaces an entry whose computation started later.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable, Iterable
from datetime import UTC, datetime
from fnmatch import fnmatchcase
from typing import Any, Generic, TypeVar

from metric_sentinel.domain.errors import CoalescingTimeoutError
from metric_sentinel.observability.logging import LOG_TAG_CACHE, get_logger
from metric_sentinel.observability.metrics import update_cache_size, update_in_flight
from metric_sentinel.services.cache.models import (
    CacheEntry,
    CacheLookup,
    CacheOutcome,
    CacheStats,
    Flight,
    KeyState,
)
from metric_sentinel.services.cache.prefetch import PrefetchQueue

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

ComputeFn = Callable[[], Awaitable[Any]]

_GLOB_CHARS = frozenset("*?[")


def key_matches(key: object, pattern: object) -> bool:
    """
    Match a key against an invalidation pattern.

    ``pattern`` may be a key object (equality), an fnmatch glob over
    ``str(key)``, or a plain string prefix of ``str(key)``.
    """
    if not isinstance(pattern, str):
        return key == pattern
    text = str(key)
    if text == pattern:
        return True
    if _GLOB_CHARS.intersection(pattern):
        return fnmatchcase(text, pattern)
    return text.startswith(pattern)


class CoalescingCache(Generic[K, V]):
    """
    Single-flight TTL cache with LRU bound, periodic sweep and prefetch.

    Args:
        ttl_for: Seconds a value for ``key`` stays fresh.
        max_entries: LRU bound on stored entries (in-flight keys not counted).
        default_timeout: Timeout for callers joining an existing flight when
            ``get_or_compute`` gets none.
        sweep_interval: Seconds between expiry sweeps once started.
        stale_while_revalidate: Serve a stale entry to callers arriving while
            a recompute for that key is already in flight.
        prefetch_queue_size: Bound of the warm-up queue.
        max_concurrent_prefetch: Prefetch worker count.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        ttl_for: Callable[[K], float],
        max_entries: int = 1000,
        default_timeout: float = 30.0,
        sweep_interval: float = 60.0,
        stale_while_revalidate: bool = False,
        prefetch_queue_size: int = 100,
        max_concurrent_prefetch: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl_for = ttl_for
        self._max_entries = max_entries
        self._default_timeout = default_timeout
        self._sweep_interval = sweep_interval
        self._stale_while_revalidate = stale_while_revalidate
        self._clock = clock

        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._flights: dict[K, Flight] = {}

        self._stats = CacheStats()
        self._sweep_task: asyncio.Task | None = None
        self._prefetch: PrefetchQueue[K] = PrefetchQueue(
            self._run_prefetch,
            self._is_fresh_or_in_flight,
            max_size=prefetch_queue_size,
            workers=max_concurrent_prefetch,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the sweep task and prefetch workers."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="cache_sweep")
        self._prefetch.start()
        logger.info(f"{LOG_TAG_CACHE} Coalescing cache started (max_entries={self._max_entries})")

    async def stop(self) -> None:
        """Stop background tasks and cancel in-flight computations."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        await self._prefetch.stop()

        flights = [f.task for f in self._flights.values() if f.task is not None and not f.task.done()]
        for task in flights:
            task.cancel()
        if flights:
            await asyncio.gather(*flights, return_exceptions=True)
        self._flights.clear()
        update_in_flight(0)
        logger.info(f"{LOG_TAG_CACHE} Coalescing cache stopped")

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, key: K) -> V | None:
        """Fresh value for ``key`` or None. Never computes."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        self._entries.move_to_end(key)
        return entry.value

    def peek(self, key: K) -> CacheEntry[V] | None:
        """Stored entry for ``key`` regardless of freshness."""
        return self._entries.get(key)

    def state(self, key: K) -> KeyState:
        if key in self._flights:
            return KeyState.COMPUTING
        entry = self._entries.get(key)
        if entry is None:
            return KeyState.ABSENT
        return KeyState.READY if entry.is_fresh(self._clock()) else KeyState.STALE

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def in_flight_count(self) -> int:
        return len(self._flights)

    async def get_or_compute(
        self,
        key: K,
        compute_fn: Callable[[], Awaitable[V]],
        *,
        force: bool = False,
        timeout: float | None = None,
    ) -> CacheLookup[V]:
        """
        Return the cached value or compute it, coalescing concurrent callers.

        Args:
            key: Cache key.
            compute_fn: Zero-argument coroutine function producing the value.
            force: Skip the freshness check (still joins an existing flight).
            timeout: Seconds this caller waits. Without one, a caller joining an
                existing flight waits ``default_timeout`` and the caller that
                starts the computation waits for it to finish.

        Raises:
            CoalescingTimeoutError: this caller stopped waiting.
            Exception: whatever ``compute_fn`` raised.
        """
        entry = self._entries.get(key)
        if not force and entry is not None and entry.is_fresh(self._clock()):
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return CacheLookup(entry.value, CacheOutcome.HIT, entry.stored_at)

        flight = self._flights.get(key)
        if flight is not None:
            if self._stale_while_revalidate and not force and entry is not None:
                self._stats.stale_serves += 1
                logger.debug(f"{LOG_TAG_CACHE} Serving stale {key} during recompute", extra={"key": str(key)})
                return CacheLookup(entry.value, CacheOutcome.STALE, entry.stored_at)
            self._stats.coalesced += 1
            outcome = CacheOutcome.COALESCED
        else:
            flight = self._install_flight(key, compute_fn)
            self._stats.misses += 1
            outcome = CacheOutcome.FORCED if force else CacheOutcome.MISS

        if timeout is None and outcome == CacheOutcome.COALESCED:
            timeout = self._default_timeout
        value = await self._wait(key, flight, timeout)
        return CacheLookup(value, outcome, flight.stored_at)

    # =========================================================================
    # Writes
    # =========================================================================

    def invalidate(self, pattern: K | str) -> int:
        """
        Drop entries matching ``pattern`` and detach matching flights.

        Returns the number of keys affected.
        """
        matched = [k for k in list(self._entries) + list(self._flights) if key_matches(k, pattern)]
        affected = set(matched)
        for key in affected:
            self._entries.pop(key, None)
            flight = self._flights.pop(key, None)
            if flight is not None:
                flight.detached = True
        if affected:
            update_cache_size(len(self._entries))
            update_in_flight(len(self._flights))
            logger.info(f"{LOG_TAG_CACHE} Invalidated {len(affected)} keys matching {pattern}")
        return len(affected)

    def clear(self) -> None:
        """Drop all entries (in-flight computations are detached)."""
        self.invalidate("")

    def warm(self, keys: Iterable[K], compute_fn: Callable[[K], Callable[[], Awaitable[V]]]) -> int:
        """
        Queue background computations for ``keys``.

        ``compute_fn(key)`` builds the zero-argument coroutine function for one
        key. Keys that are fresh, in flight or already queued are skipped; a
        full queue drops. Returns how many keys were queued.
        """
        return sum(1 for key in keys if self._prefetch.submit(key, compute_fn(key)))

    async def drain_prefetch(self) -> None:
        """Wait until queued prefetch jobs have been processed (requires ``start``)."""
        await self._prefetch.join()

    def sweep(self) -> int:
        """
        Remove expired entries.

        With stale-while-revalidate on, entries are kept for one extra TTL so
        they can still be served during a recompute. Returns the count removed.
        """
        now = self._clock()
        expired = []
        for key, entry in self._entries.items():
            grace = (entry.expires_at - entry.started_at) if self._stale_while_revalidate else 0.0
            if now >= entry.expires_at + grace:
                expired.append(key)
        for key in expired:
            del self._entries[key]
        if expired:
            self._stats.expired += len(expired)
            update_cache_size(len(self._entries))
            logger.debug(f"{LOG_TAG_CACHE} Sweep removed {len(expired)} expired entries")
        return len(expired)

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> CacheStats:
        """Snapshot of counters, size and prefetch state."""
        stats = CacheStats(**{k: v for k, v in vars(self._stats).items() if k != "prefetch"})
        stats.size = len(self._entries)
        stats.in_flight = len(self._flights)
        stats.prefetch = self._prefetch.snapshot()
        return stats

    def reset_stats(self) -> None:
        self._stats = CacheStats()
        self._prefetch.stats = type(self._prefetch.stats)()

    # =========================================================================
    # Internals
    # =========================================================================

    def _install_flight(self, key: K, compute_fn: ComputeFn) -> Flight:
        flight = Flight(
            started_at=self._clock(),
            stored_at=datetime.now(UTC),
        )
        flight.task = asyncio.create_task(self._run_flight(key, compute_fn, flight), name=f"compute:{key}")
        flight.task.add_done_callback(_consume_exception)
        self._flights[key] = flight
        update_in_flight(len(self._flights))
        return flight

    async def _run_flight(self, key: K, compute_fn: ComputeFn, flight: Flight) -> Any:
        try:
            value = await compute_fn()
        except BaseException:
            self._stats.failures += 1
            # FAILED -> ABSENT
            if not flight.detached:
                self._entries.pop(key, None)
            raise
        else:
            self._stats.computations += 1
            if not flight.detached:
                self._store(key, value, flight)
            else:
                self._stats.discarded += 1
                logger.debug(f"{LOG_TAG_CACHE} Discarded result for invalidated {key}", extra={"key": str(key)})
            return value
        finally:
            if self._flights.get(key) is flight:
                del self._flights[key]
            update_in_flight(len(self._flights))

    def _store(self, key: K, value: V, flight: Flight) -> None:
        existing = self._entries.get(key)
        if existing is not None and existing.started_at > flight.started_at:
            self._stats.discarded += 1
            return

        ttl = float(self._ttl_for(key))
        self._entries[key] = CacheEntry(
            value=value,
            started_at=flight.started_at,
            expires_at=flight.started_at + ttl,
            stored_at=flight.stored_at,
        )
        self._entries.move_to_end(key)

        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug(f"{LOG_TAG_CACHE} Evicted {evicted} (LRU)", extra={"key": str(evicted)})
        update_cache_size(len(self._entries))

    async def _wait(self, key: K, flight: Flight, timeout: float | None) -> Any:
        assert flight.task is not None
        try:
            return await asyncio.wait_for(asyncio.shield(flight.task), timeout=timeout)
        except TimeoutError as e:
            if flight.task.done():
                # The computation itself raised TimeoutError
                raise
            raise CoalescingTimeoutError(
                f"Gave up waiting for {key} after {timeout}s",
                key=key,
                timeout_seconds=timeout,
            ) from e

    def _is_fresh_or_in_flight(self, key: K) -> bool:
        if key in self._flights:
            return True
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock())

    async def _run_prefetch(self, key: K, compute_fn: ComputeFn) -> None:
        await self.get_or_compute(key, compute_fn)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception(f"{LOG_TAG_CACHE} Sweep failed")


def _consume_exception(task: asyncio.Task) -> None:
    # Mark the exception retrieved; waiters (if any) receive it through shield()
    if not task.cancelled():
        task.exception()
