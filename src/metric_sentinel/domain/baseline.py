"""
Baseline Calculator.

Rolling summary statistics (mean, population stddev, min/max, trailing
moving average) of a metric over fixed windows ending at ``now``.

Empty or thin history is a valid state, not a failure: the degenerate
Baseline is returned with ``low_confidence`` set.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from metric_sentinel.domain.models import Baseline, Sample, Window

DEFAULT_MOVING_AVERAGE_LENGTH = 5
MIN_SAMPLES_FOR_STDDEV = 2


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    return math.fsum(values) / len(values)


def population_stddev(values: Sequence[float], center: float | None = None) -> float:
    """Population standard deviation; 0.0 below two values."""
    n = len(values)
    if n < MIN_SAMPLES_FOR_STDDEV:
        return 0.0
    mu = mean(values) if center is None else center
    variance = math.fsum((v - mu) ** 2 for v in values) / n
    return math.sqrt(max(variance, 0.0))


def trailing_moving_average(values: Sequence[float], length: int = DEFAULT_MOVING_AVERAGE_LENGTH) -> float:
    """Mean of the last ``length`` values (all values if fewer)."""
    if not values:
        return 0.0
    length = max(1, int(length))
    return mean(values[-length:])


def select_window(samples: Sequence[Sample], window: Window, now: datetime) -> list[Sample]:
    """Samples with ``now - window <= timestamp <= now``."""
    start = now - window.duration
    return [s for s in samples if start <= s.timestamp <= now]


def compute_baseline(
    samples: Sequence[Sample],
    window: Window,
    *,
    now: datetime | None = None,
    moving_average_length: int = DEFAULT_MOVING_AVERAGE_LENGTH,
    computed_at: datetime | None = None,
) -> Baseline:
    """Baseline for a single window. ``samples`` must be sorted ascending."""
    computed_at = computed_at or datetime.now(UTC)
    if now is None:
        now = samples[-1].timestamp if samples else computed_at

    values = [s.value for s in select_window(samples, window, now)]
    n = len(values)
    if n == 0:
        return Baseline(
            window=window,
            mean=0.0,
            stddev=0.0,
            moving_average=0.0,
            sample_count=0,
            computed_at=computed_at,
            low_confidence=True,
        )

    mu = mean(values)
    return Baseline(
        window=window,
        mean=mu,
        stddev=population_stddev(values, center=mu),
        moving_average=trailing_moving_average(values, moving_average_length),
        sample_count=n,
        computed_at=computed_at,
        minimum=min(values),
        maximum=max(values),
        low_confidence=n < MIN_SAMPLES_FOR_STDDEV,
    )


def compute_baselines(
    samples: Sequence[Sample],
    windows: Iterable[Window],
    *,
    now: datetime | None = None,
    moving_average_length: int = DEFAULT_MOVING_AVERAGE_LENGTH,
) -> dict[Window, Baseline]:
    """
    Compute one Baseline per window.

    Args:
        samples: Sorted ascending, no duplicate timestamps.
        windows: Window sizes to compute.
        now: Right edge of every window (defaults to the latest sample).
        moving_average_length: Trailing sub-window for the moving average.
    """
    computed_at = datetime.now(UTC)
    return {
        window: compute_baseline(
            samples,
            window,
            now=now,
            moving_average_length=moving_average_length,
            computed_at=computed_at,
        )
        for window in sorted(set(windows), key=lambda w: w.duration)
    }
