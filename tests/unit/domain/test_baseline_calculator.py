"""
Unit tests for the baseline calculator.

Pure functions, no I/O.
"""

import math
from datetime import UTC, datetime, timedelta

import pytest

from metric_sentinel.domain.baseline import (
    compute_baseline,
    compute_baselines,
    mean,
    population_stddev,
    select_window,
    trailing_moving_average,
)
from metric_sentinel.domain.models import Sample, Window

NOW = datetime(2024, 6, 1, tzinfo=UTC)


def _series(values, step=timedelta(days=1)):
    n = len(values)
    return [Sample(NOW - step * (n - 1 - i), float(v)) for i, v in enumerate(values)]


class TestHelpers:
    def test_mean_of_empty_is_zero(self) -> None:
        assert mean([]) == 0.0

    def test_population_stddev(self) -> None:
        # Population (not sample) standard deviation
        assert population_stddev([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)

    def test_stddev_below_two_values_is_zero(self) -> None:
        assert population_stddev([]) == 0.0
        assert population_stddev([42.0]) == 0.0

    def test_moving_average_uses_trailing_values(self) -> None:
        assert trailing_moving_average([1, 2, 3, 4, 5, 6, 7], length=5) == pytest.approx(5.0)

    def test_moving_average_with_fewer_values_uses_all(self) -> None:
        assert trailing_moving_average([2, 4], length=5) == pytest.approx(3.0)

    def test_select_window_is_inclusive(self) -> None:
        samples = _series(range(10))
        selected = select_window(samples, Window.D7, NOW)
        # now - 7d .. now inclusive -> 8 daily samples
        assert len(selected) == 8
        assert selected[0].timestamp == NOW - timedelta(days=7)


class TestComputeBaseline:
    def test_empty_input_is_degenerate_not_an_error(self) -> None:
        baseline = compute_baseline([], Window.D30, now=NOW)

        assert baseline.sample_count == 0
        assert baseline.mean == 0.0
        assert baseline.stddev == 0.0
        assert baseline.moving_average == 0.0
        assert baseline.low_confidence is True

    def test_single_sample_is_low_confidence(self) -> None:
        baseline = compute_baseline(_series([10]), Window.D7, now=NOW)

        assert baseline.sample_count == 1
        assert baseline.stddev == 0.0
        assert baseline.low_confidence is True

    @pytest.mark.parametrize(
        "values",
        [
            [1, 1],
            [5, 5, 5, 5],
            [-3, 7, 2.5, 1e6, 0],
            [100 + (i % 3) for i in range(30)],
        ],
    )
    def test_two_or_more_samples_are_confident_and_non_negative(self, values) -> None:
        baseline = compute_baseline(_series(values), Window.D90, now=NOW)

        assert baseline.sample_count == len(values)
        assert baseline.stddev >= 0
        assert math.isfinite(baseline.stddev)
        assert baseline.low_confidence is False

    def test_statistics(self) -> None:
        baseline = compute_baseline(_series([10, 20, 30, 40]), Window.D7, now=NOW, moving_average_length=2)

        assert baseline.mean == pytest.approx(25.0)
        assert baseline.stddev == pytest.approx(math.sqrt(125.0))
        assert baseline.moving_average == pytest.approx(35.0)
        assert baseline.minimum == 10
        assert baseline.maximum == 40

    def test_now_defaults_to_latest_sample(self) -> None:
        baseline = compute_baseline(_series(range(20)), Window.D7)
        assert baseline.sample_count == 8


class TestComputeBaselines:
    def test_one_baseline_per_window(self) -> None:
        samples = _series(range(100))
        baselines = compute_baselines(samples, {Window.D7, Window.D30, Window.D90}, now=NOW)

        assert list(baselines) == [Window.D7, Window.D30, Window.D90]
        assert baselines[Window.D7].sample_count == 8
        assert baselines[Window.D30].sample_count == 31
        assert baselines[Window.D90].sample_count == 91

    def test_windows_share_computed_at(self) -> None:
        baselines = compute_baselines(_series([1, 2, 3]), [Window.D7, Window.D30], now=NOW)
        stamps = {b.computed_at for b in baselines.values()}
        assert len(stamps) == 1

    def test_empty_series_yields_degenerate_baselines(self) -> None:
        baselines = compute_baselines([], [Window.D7, Window.D30], now=NOW)
        assert all(b.sample_count == 0 and b.low_confidence for b in baselines.values())
