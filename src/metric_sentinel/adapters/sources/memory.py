"""
In-memory sample source.

Used for tests and for embedding the engine next to data that is already
loaded. Supports injected latency and failures.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from metric_sentinel.domain.errors import SourceUnavailableError
from metric_sentinel.domain.models import Sample
from metric_sentinel.ports.sample_source import SampleSourcePort


class InMemorySampleSource(SampleSourcePort):
    """Samples held in a dict keyed by (asset_id, metric_name)."""

    name = "memory"

    def __init__(self, *, delay_seconds: float = 0.0):
        self._series: dict[tuple[str, str], list[Sample]] = defaultdict(list)
        self.delay_seconds = delay_seconds
        self.failure: Exception | None = None
        self.fetch_count = 0

    def add_samples(self, asset_id: str, metric_name: str, samples: Iterable[Sample]) -> None:
        self._series[(asset_id, metric_name)].extend(samples)

    def set_samples(self, asset_id: str, metric_name: str, samples: Iterable[Sample]) -> None:
        self._series[(asset_id, metric_name)] = list(samples)

    def fail_with(self, error: Exception | None) -> None:
        """Make subsequent fetches raise ``error`` (None restores normal behaviour)."""
        self.failure = error

    async def fetch_samples(
        self,
        asset_id: str,
        metric_name: str,
        start: datetime,
        end: datetime,
    ) -> list[Sample]:
        self.fetch_count += 1
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self.failure is not None:
            if isinstance(self.failure, SourceUnavailableError):
                raise self.failure
            raise SourceUnavailableError(
                f"In-memory source failure: {self.failure}",
                source=self.name,
            ) from self.failure
        return [s for s in self._series.get((asset_id, metric_name), []) if start <= s.timestamp <= end]
