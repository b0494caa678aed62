"""
Sample Source Port: Abstract interface for metric history.

The engine treats the source as read-only and possibly slow or unavailable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from metric_sentinel.domain.models import Sample


class SampleSourcePort(ABC):
    """
    Abstract interface for loading metric samples.

    Implementations can be in-memory, SQLite, HTTP or any other backend.
    """

    name: str = "source"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Open connections. Default: nothing to do."""
        return None

    async def close(self) -> None:
        """Close connections and cleanup. Default: nothing to do."""
        return None

    # =========================================================================
    # Reads
    # =========================================================================

    @abstractmethod
    async def fetch_samples(
        self,
        asset_id: str,
        metric_name: str,
        start: datetime,
        end: datetime,
    ) -> list[Sample]:
        """
        Samples with ``start <= timestamp <= end``.

        Order and duplicates are not guaranteed; callers normalize. A source
        may return fewer samples than exist (partial history is tolerated).

        Raises:
            SourceUnavailableError: backend failed or timed out.
        """
        ...
