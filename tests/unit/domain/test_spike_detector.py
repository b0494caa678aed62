"""
Unit tests for the spike detector.
"""

import math
from datetime import UTC, datetime

import pytest

from metric_sentinel.domain.models import Baseline, Severity, Window
from metric_sentinel.domain.spike import SpikeThresholds, detect_spike, deviation_percent


def _baseline(mean: float = 100.0, *, low_confidence: bool = False, window: Window = Window.D30) -> Baseline:
    return Baseline(
        window=window,
        mean=mean,
        stddev=5.0,
        moving_average=mean,
        sample_count=1 if low_confidence else 30,
        computed_at=datetime(2024, 1, 1, tzinfo=UTC),
        low_confidence=low_confidence,
    )


class TestDeviation:
    def test_signed_percentage(self) -> None:
        assert deviation_percent(150, 100) == pytest.approx(50.0)
        assert deviation_percent(50, 100) == pytest.approx(-50.0)

    @pytest.mark.parametrize("current", [0.0, 1.0, -5.0, 1e12])
    def test_zero_baseline_reports_zero(self, current) -> None:
        result = detect_spike(current, _baseline(mean=0.0))

        assert result.deviation_percent == 0.0
        assert math.isfinite(result.deviation_percent)
        assert result.severity == Severity.NONE
        assert "zero" in result.reason


class TestSeverityTiers:
    @pytest.mark.parametrize(
        "current, expected",
        [
            (149.9, Severity.NONE),  # 49.9%
            (150.0, Severity.LOW),  # 50%
            (199.9, Severity.LOW),  # 99.9%
            (200.0, Severity.MEDIUM),  # 100%
            (299.9, Severity.MEDIUM),  # 199.9%
            (300.0, Severity.HIGH),  # 200%
            (50.1, Severity.NONE),  # -49.9%
            (50.0, Severity.LOW),  # -50%
        ],
    )
    def test_boundaries_inclusive_on_lower_bound(self, current, expected) -> None:
        result = detect_spike(current, _baseline())

        assert result.severity == expected
        assert result.is_spike == (expected != Severity.NONE)

    @pytest.mark.parametrize("current", [0, 49.9, 100, 150, 199.9, 200, 300, 1000, -400])
    def test_severity_implies_is_spike(self, current) -> None:
        result = detect_spike(current, _baseline())
        if result.severity != Severity.NONE:
            assert result.is_spike is True

    def test_custom_thresholds(self) -> None:
        thresholds = SpikeThresholds(low=10, medium=20, high=30)
        assert detect_spike(125, _baseline(), thresholds=thresholds).severity == Severity.MEDIUM

    def test_thresholds_must_ascend(self) -> None:
        with pytest.raises(ValueError):
            SpikeThresholds(low=100, medium=50, high=200)


class TestLowConfidenceCap:
    def test_severity_capped_at_low(self) -> None:
        result = detect_spike(1000, _baseline(low_confidence=True))

        assert result.severity == Severity.LOW
        assert result.is_spike is True
        assert result.capped is True
        assert "insufficient history" in result.reason

    def test_below_low_threshold_is_not_raised(self) -> None:
        result = detect_spike(110, _baseline(low_confidence=True))

        assert result.severity == Severity.NONE
        assert result.capped is False


class TestReason:
    def test_names_metric_window_and_percentage(self) -> None:
        result = detect_spike(400, _baseline(window=Window.D30), metric_name="tvl")

        assert result.severity == Severity.HIGH
        assert result.reason == "tvl shows critical spike of 300.0% above 30d baseline"

    def test_drop_is_reported_below(self) -> None:
        result = detect_spike(20, _baseline(window=Window.D7), metric_name="volume")
        assert result.reason == "volume shows moderate spike of 80.0% below 7d baseline"

    def test_normal_range(self) -> None:
        result = detect_spike(101, _baseline(), metric_name="price")
        assert result.reason.startswith("price within normal range")

    def test_result_records_window(self) -> None:
        assert detect_spike(100, _baseline(window=Window.D90)).window == Window.D90
