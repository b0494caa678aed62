"""
Prefetch queue.

Bounded queue of (key, compute_fn) jobs drained by a small worker pool.
Submission never blocks: a full queue drops the job. Failures are logged and
counted, never raised to the submitter.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

from metric_sentinel.observability.logging import LOG_TAG_PREFETCH, get_logger
from metric_sentinel.observability.metrics import record_prefetch
from metric_sentinel.services.cache.models import PrefetchStats

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)

ComputeFn = Callable[[], Awaitable[Any]]


class PrefetchQueue(Generic[K]):
    """
    Worker pool for best-effort background computations.

    Args:
        run: Executes one job (normally ``CoalescingCache.get_or_compute``).
        should_skip: Checked at submit and again at dequeue; True means the
            key is already fresh or in flight.
        max_size: Queue bound.
        workers: Number of concurrent workers.
    """

    def __init__(
        self,
        run: Callable[[K, ComputeFn], Awaitable[Any]],
        should_skip: Callable[[K], bool],
        *,
        max_size: int = 100,
        workers: int = 2,
    ):
        self._run = run
        self._should_skip = should_skip
        self._queue: asyncio.Queue[tuple[K, ComputeFn]] = asyncio.Queue(maxsize=max_size)
        self._pending: set[K] = set()
        self._worker_count = workers
        self._workers: list[asyncio.Task] = []
        self.stats = PrefetchStats()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def submit(self, key: K, compute_fn: ComputeFn) -> bool:
        """Queue a job. Returns False if skipped, already queued, or dropped."""
        if key in self._pending or self._should_skip(key):
            self.stats.skipped += 1
            record_prefetch("skipped")
            return False
        try:
            self._queue.put_nowait((key, compute_fn))
        except asyncio.QueueFull:
            self.stats.dropped += 1
            record_prefetch("dropped")
            logger.debug(f"{LOG_TAG_PREFETCH} Queue full, dropped {key}", extra={"key": str(key)})
            return False
        self._pending.add(key)
        self.stats.enqueued += 1
        record_prefetch("enqueued")
        return True

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"prefetch_worker_{i}") for i in range(self._worker_count)
        ]
        logger.debug(f"{LOG_TAG_PREFETCH} Started {self._worker_count} workers")

    async def stop(self) -> None:
        """Cancel workers; queued jobs are discarded."""
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        for task in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._pending.clear()

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    def snapshot(self) -> PrefetchStats:
        self.stats.queue_depth = self.depth
        return PrefetchStats(**vars(self.stats))

    async def _worker_loop(self) -> None:
        while True:
            key, compute_fn = await self._queue.get()
            try:
                await self._process(key, compute_fn)
            finally:
                self._pending.discard(key)
                self._queue.task_done()

    async def _process(self, key: K, compute_fn: ComputeFn) -> None:
        if self._should_skip(key):
            self.stats.skipped += 1
            record_prefetch("skipped")
            return
        try:
            await self._run(key, compute_fn)
        except Exception as e:
            self.stats.failed += 1
            record_prefetch("failed")
            logger.warning(f"{LOG_TAG_PREFETCH} Prefetch of {key} failed: {e!r}", extra={"key": str(key)})
            return
        self.stats.completed += 1
        record_prefetch("completed")
        logger.debug(f"{LOG_TAG_PREFETCH} Prefetched {key}", extra={"key": str(key)})
