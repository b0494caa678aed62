"""
Prometheus metrics for observability.

Provides metrics for monitoring the coalescing cache, analysis computations,
prefetch queue and sample sources.

Usage:
    from metric_sentinel.observability.metrics import record_cache_lookup

    record_cache_lookup(timeframe="7d", outcome="hit")

Labels are kept low-cardinality (timeframe, outcome, source); asset and
metric names belong in logs, not in metric labels.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Metric Definitions
# =============================================================================

cache_lookups_total = Counter(
    "metric_sentinel_cache_lookups_total",
    "Cache lookups by outcome",
    ["timeframe", "outcome"],  # outcome: hit, miss, coalesced, stale, forced
)

computations_total = Counter(
    "metric_sentinel_computations_total",
    "Analysis computations by outcome",
    ["timeframe", "outcome"],  # outcome: success, failure, fallback, discarded
)

compute_duration_seconds = Histogram(
    "metric_sentinel_compute_duration_seconds",
    "Wall time of one analysis computation (load + compute)",
    ["timeframe"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

in_flight_computations = Gauge(
    "metric_sentinel_in_flight_computations",
    "Computations currently running",
)

cache_entries = Gauge(
    "metric_sentinel_cache_entries",
    "Entries held by the coalescing cache",
)

prefetch_total = Counter(
    "metric_sentinel_prefetch_total",
    "Prefetch requests by outcome",
    ["outcome"],  # outcome: enqueued, dropped, skipped, completed, failed
)

source_fetch_failures_total = Counter(
    "metric_sentinel_source_fetch_failures_total",
    "Sample source fetch failures",
    ["source", "error_code"],
)

spikes_detected_total = Counter(
    "metric_sentinel_spikes_detected_total",
    "Spikes detected by severity",
    ["severity"],
)


# =============================================================================
# Helper Functions
# =============================================================================


def record_cache_lookup(timeframe: str, outcome: str) -> None:
    cache_lookups_total.labels(timeframe=timeframe, outcome=outcome).inc()


def record_computation(timeframe: str, outcome: str, duration_seconds: float | None = None) -> None:
    """
    Record one computation.

    Args:
        timeframe: Timeframe value of the key (e.g. "7d")
        outcome: success, failure, fallback or discarded
        duration_seconds: Wall time, observed only when given
    """
    computations_total.labels(timeframe=timeframe, outcome=outcome).inc()
    if duration_seconds is not None:
        compute_duration_seconds.labels(timeframe=timeframe).observe(duration_seconds)


def record_prefetch(outcome: str) -> None:
    prefetch_total.labels(outcome=outcome).inc()


def record_source_failure(source: str, error_code: str) -> None:
    source_fetch_failures_total.labels(source=source, error_code=error_code).inc()


def record_spike(severity: str) -> None:
    spikes_detected_total.labels(severity=severity).inc()


def update_in_flight(count: int) -> None:
    in_flight_computations.set(count)


def update_cache_size(count: int) -> None:
    cache_entries.set(count)
