"""Observability: logging, metrics."""

from metric_sentinel.observability.logging import (
    LOG_TAG_CACHE,
    LOG_TAG_PREFETCH,
    LOG_TAG_SPIKE,
    get_logger,
    setup_logging,
)
from metric_sentinel.observability.metrics import (
    record_cache_lookup,
    record_computation,
    record_prefetch,
    record_source_failure,
    record_spike,
    update_cache_size,
    update_in_flight,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "LOG_TAG_CACHE",
    "LOG_TAG_SPIKE",
    "LOG_TAG_PREFETCH",
    # Metrics helpers
    "record_cache_lookup",
    "record_computation",
    "record_prefetch",
    "record_source_failure",
    "record_spike",
    "update_cache_size",
    "update_in_flight",
]
