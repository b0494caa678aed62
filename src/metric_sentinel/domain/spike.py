"""
Spike Detector.

Pure classification of a current value against a Baseline. Tiers use the
absolute percentage deviation from the baseline mean with inclusive lower
bounds:

    none < low_threshold <= low < medium_threshold <= medium < high_threshold <= high
"""

from __future__ import annotations

from dataclasses import dataclass

from metric_sentinel.domain.models import Baseline, Severity, SpikeResult

# Reason wording per tier
_SEVERITY_TEXT = {
    Severity.LOW: "moderate",
    Severity.MEDIUM: "significant",
    Severity.HIGH: "critical",
}


@dataclass(frozen=True)
class SpikeThresholds:
    """Percent deviation at which each tier starts."""

    low: float = 50.0
    medium: float = 100.0
    high: float = 200.0

    def __post_init__(self) -> None:
        if not (0 <= self.low <= self.medium <= self.high):
            raise ValueError(
                f"Spike thresholds must satisfy 0 <= low <= medium <= high "
                f"(got low={self.low}, medium={self.medium}, high={self.high})"
            )

    def classify(self, abs_deviation_percent: float) -> Severity:
        if abs_deviation_percent >= self.high:
            return Severity.HIGH
        if abs_deviation_percent >= self.medium:
            return Severity.MEDIUM
        if abs_deviation_percent >= self.low:
            return Severity.LOW
        return Severity.NONE


DEFAULT_THRESHOLDS = SpikeThresholds()


def deviation_percent(current: float, baseline_value: float) -> float:
    """Signed percent deviation; 0.0 when the baseline is zero."""
    if baseline_value == 0:
        return 0.0
    return (current - baseline_value) / baseline_value * 100.0


def detect_spike(
    current: float,
    baseline: Baseline,
    *,
    metric_name: str = "metric",
    thresholds: SpikeThresholds = DEFAULT_THRESHOLDS,
) -> SpikeResult:
    """
    Classify ``current`` against ``baseline.mean``.

    Low-confidence baselines cap severity at LOW.
    """
    baseline_value = baseline.mean
    deviation = deviation_percent(current, baseline_value)
    severity = thresholds.classify(abs(deviation))

    capped = False
    if baseline.low_confidence and severity.rank > Severity.LOW.rank:
        severity = Severity.LOW
        capped = True

    window = baseline.window.value
    direction = "above" if deviation >= 0 else "below"

    if baseline.low_confidence:
        reason = (
            f"{metric_name}: insufficient history in {window} window "
            f"({baseline.sample_count} samples), deviation {deviation:+.1f}%"
        )
        if capped:
            reason += " - severity capped at low"
    elif baseline_value == 0:
        reason = f"{metric_name}: {window} baseline is zero, deviation undefined"
    elif severity == Severity.NONE:
        reason = f"{metric_name} within normal range: {abs(deviation):.1f}% {direction} {window} baseline"
    else:
        reason = (
            f"{metric_name} shows {_SEVERITY_TEXT[severity]} spike of {abs(deviation):.1f}% "
            f"{direction} {window} baseline"
        )

    return SpikeResult(
        is_spike=severity != Severity.NONE,
        severity=severity,
        current_value=current,
        baseline_value=baseline_value,
        deviation_percent=deviation,
        reason=reason,
        window=baseline.window,
        capped=capped,
    )
