from datetime import UTC, datetime, timedelta

import pytest

from metric_sentinel.adapters.sources.memory import InMemorySampleSource
from metric_sentinel.config.settings import Settings
from metric_sentinel.domain.models import Sample

# Fixed "now" used across tests; analysis windows end here
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def daily_samples(values, *, end=NOW, step=timedelta(days=1)):
    """Samples spaced ``step`` apart, the last one at ``end``."""
    count = len(values)
    return [Sample(timestamp=end - step * (count - 1 - i), value=float(v)) for i, v in enumerate(values)]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings(monkeypatch):
    """Default settings, isolated from SENTINEL_* variables of the host."""
    import os

    for name in list(os.environ):
        if name.startswith("SENTINEL_"):
            monkeypatch.delenv(name, raising=False)
    return Settings(testing_mode=True)


@pytest.fixture
def memory_source():
    return InMemorySampleSource()


@pytest.fixture
def make_samples():
    return daily_samples
