"""
Unit tests for the prefetch queue and cache warm-up.
"""

import asyncio

import pytest

from metric_sentinel.domain.models import MetricKey
from metric_sentinel.services.cache import CoalescingCache, PrefetchQueue


def _value(v):
    async def compute():
        return v

    return compute


class TestPrefetchQueue:
    def test_submit_skips_fresh_keys(self) -> None:
        queue = PrefetchQueue(run=None, should_skip=lambda key: key == "fresh")

        assert queue.submit("fresh", _value(1)) is False
        assert queue.submit("cold", _value(1)) is True
        assert queue.stats.skipped == 1
        assert queue.stats.enqueued == 1

    def test_duplicate_pending_key_is_skipped(self) -> None:
        queue = PrefetchQueue(run=None, should_skip=lambda key: False)

        assert queue.submit("a", _value(1)) is True
        assert queue.submit("a", _value(1)) is False
        assert queue.depth == 1

    def test_full_queue_drops_without_blocking(self) -> None:
        queue = PrefetchQueue(run=None, should_skip=lambda key: False, max_size=2)

        results = [queue.submit(k, _value(k)) for k in ("a", "b", "c")]

        assert results == [True, True, False]
        assert queue.stats.dropped == 1
        assert queue.snapshot().queue_depth == 2

    @pytest.mark.asyncio
    async def test_workers_run_jobs(self) -> None:
        done = []

        async def run(key, compute_fn):
            done.append((key, await compute_fn()))

        queue = PrefetchQueue(run, should_skip=lambda key: False, workers=2)
        queue.start()
        try:
            queue.submit("a", _value(1))
            queue.submit("b", _value(2))
            await asyncio.wait_for(queue.join(), timeout=1)
        finally:
            await queue.stop()

        assert sorted(done) == [("a", 1), ("b", 2)]
        assert queue.stats.completed == 2

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self) -> None:
        async def run(key, compute_fn):
            raise RuntimeError("nope")

        queue = PrefetchQueue(run, should_skip=lambda key: False)
        queue.start()
        try:
            queue.submit("a", _value(1))
            await asyncio.wait_for(queue.join(), timeout=1)
        finally:
            await queue.stop()

        assert queue.stats.failed == 1
        assert queue.running is False

    @pytest.mark.asyncio
    async def test_rechecks_skip_at_dequeue(self) -> None:
        fresh = set()
        ran = []

        async def run(key, compute_fn):
            ran.append(key)

        queue = PrefetchQueue(run, should_skip=lambda key: key in fresh)
        queue.submit("a", _value(1))
        fresh.add("a")

        queue.start()
        try:
            await asyncio.wait_for(queue.join(), timeout=1)
        finally:
            await queue.stop()

        assert ran == []
        assert queue.stats.skipped == 1

    @pytest.mark.asyncio
    async def test_stop_discards_queued_jobs(self) -> None:
        queue = PrefetchQueue(run=None, should_skip=lambda key: False)
        queue.submit("a", _value(1))

        await queue.stop()

        assert queue.depth == 0
        assert queue.submit("a", _value(1)) is True


class TestCacheWarm:
    @pytest.mark.asyncio
    async def test_warm_populates_cache(self) -> None:
        cache = CoalescingCache(ttl_for=lambda key: 60)
        keys = [MetricKey("btc", "tvl", tf) for tf in ("24h", "7d")]

        await cache.start()
        try:
            queued = cache.warm(keys, lambda key: _value(str(key)))
            await asyncio.wait_for(cache.drain_prefetch(), timeout=1)
        finally:
            await cache.stop()

        assert queued == 2
        assert cache.get(keys[0]) == "btc:tvl:24h"
        assert cache.get(keys[1]) == "btc:tvl:7d"

    @pytest.mark.asyncio
    async def test_warm_skips_fresh_keys(self) -> None:
        cache = CoalescingCache(ttl_for=lambda key: 60)
        key = MetricKey("btc", "tvl", "7d")
        await cache.get_or_compute(key, _value("cached"))

        assert cache.warm([key], lambda k: _value("new")) == 0
        assert cache.get_stats().prefetch.skipped == 1

    @pytest.mark.asyncio
    async def test_warm_failure_leaves_key_absent(self) -> None:
        cache = CoalescingCache(ttl_for=lambda key: 60)
        key = MetricKey("btc", "tvl", "7d")

        async def failing():
            raise RuntimeError("source down")

        await cache.start()
        try:
            cache.warm([key], lambda k: failing)
            await asyncio.wait_for(cache.drain_prefetch(), timeout=1)
        finally:
            await cache.stop()

        assert key not in cache
        assert cache.get_stats().prefetch.failed == 1
