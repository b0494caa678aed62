"""Sample source adapters."""

from metric_sentinel.adapters.sources.http import HttpSampleSource
from metric_sentinel.adapters.sources.memory import InMemorySampleSource
from metric_sentinel.adapters.sources.sqlite import SqliteSampleSource

__all__ = ["HttpSampleSource", "InMemorySampleSource", "SqliteSampleSource"]
