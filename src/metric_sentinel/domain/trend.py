"""
Trend Analyzer.

Ordinary least-squares fit of value against a normalized time index
(t = 0 at the first sample, t = 1 at the last). Because the index spans the
whole window, ``slope`` is the total change the fit predicts across it.

Derived classifications:
- direction: stable when |slope| / scale is under ``stable_threshold``
- strength: |slope| / scale relative to ``strength_scale_factor``, capped at 1
- momentum: mean second difference of the most recent values (acceleration)
- volatility: stddev of fit residuals over |mean|
- confidence: r_squared, scaled down while history is short
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from metric_sentinel.domain.baseline import mean, population_stddev
from metric_sentinel.domain.models import (
    Direction,
    KeyPoints,
    Momentum,
    Sample,
    TrendAnalysis,
)


@dataclass(frozen=True)
class TrendConfig:
    """Tunable constants of the trend analysis."""

    min_samples_for_full_confidence: int = 14
    strength_scale_factor: float = 0.5
    stable_threshold: float = 0.01  # fraction of the mean value over the window
    momentum_window: int = 5
    momentum_moderate: float = 0.01
    momentum_strong: float = 0.05
    high_volatility: float = 0.2

    def __post_init__(self) -> None:
        if self.min_samples_for_full_confidence < 1:
            raise ValueError("min_samples_for_full_confidence must be >= 1")
        if self.strength_scale_factor <= 0:
            raise ValueError("strength_scale_factor must be positive")
        if self.momentum_window < 3:
            raise ValueError("momentum_window must be >= 3 (second difference)")


DEFAULT_TREND_CONFIG = TrendConfig()


@dataclass(frozen=True)
class LinearFit:
    slope: float
    intercept: float
    r_squared: float
    residuals: tuple[float, ...]


def normalized_time_index(samples: Sequence[Sample]) -> list[float]:
    """
    Map timestamps onto [0, 1].

    Falls back to evenly spaced positions when all timestamps coincide.
    """
    n = len(samples)
    if n == 0:
        return []
    if n == 1:
        return [0.0]
    first = samples[0].timestamp
    span = (samples[-1].timestamp - first).total_seconds()
    if span <= 0:
        return [i / (n - 1) for i in range(n)]
    return [(s.timestamp - first).total_seconds() / span for s in samples]


def fit_line(xs: Sequence[float], ys: Sequence[float]) -> LinearFit:
    """OLS fit of ys = slope * xs + intercept."""
    n = len(xs)
    if n == 0:
        return LinearFit(0.0, 0.0, 0.0, ())

    mx = mean(xs)
    my = mean(ys)
    sxx = math.fsum((x - mx) ** 2 for x in xs)
    sxy = math.fsum((x - mx) * (y - my) for x, y in zip(xs, ys, strict=True))

    slope = sxy / sxx if sxx > 0 else 0.0
    intercept = my - slope * mx

    residuals = tuple(y - (slope * x + intercept) for x, y in zip(xs, ys, strict=True))
    ss_res = math.fsum(r * r for r in residuals)
    ss_tot = math.fsum((y - my) ** 2 for y in ys)

    if ss_tot > 0:
        r_squared = 1.0 - ss_res / ss_tot
    else:
        # Constant series: the horizontal line explains it exactly
        r_squared = 1.0 if n >= 2 else 0.0

    return LinearFit(slope, intercept, min(1.0, max(0.0, r_squared)), residuals)


def _value_scale(values: Sequence[float], mu: float) -> float:
    if mu != 0:
        return abs(mu)
    peak = max((abs(v) for v in values), default=0.0)
    return peak or 1.0


def classify_momentum(values: Sequence[float], scale: float, config: TrendConfig) -> Momentum:
    """Bucket the mean acceleration of the last ``momentum_window`` values."""
    recent = list(values[-config.momentum_window:])
    if len(recent) < 3:
        return Momentum.WEAK
    second_diffs = [recent[i] - 2 * recent[i - 1] + recent[i - 2] for i in range(2, len(recent))]
    acceleration = abs(mean(second_diffs)) / scale
    if acceleration >= config.momentum_strong:
        return Momentum.STRONG
    if acceleration >= config.momentum_moderate:
        return Momentum.MODERATE
    return Momentum.WEAK


def build_recommendations(
    *,
    direction: Direction,
    strength: float,
    momentum: Momentum,
    volatility: float,
    key_points: KeyPoints,
    high_volatility: float,
) -> tuple[str, ...]:
    """Human-readable hints derived from the classification."""
    notes: list[str] = []
    if direction == Direction.UP:
        if strength > 0.7 and momentum == Momentum.STRONG:
            notes.append("Strong upward trend - watch for overextension")
        elif strength > 0.4:
            notes.append("Moderate upward trend - growth appears sustained")
        if key_points.peak > 0 and key_points.current > key_points.peak * 0.95:
            notes.append("Approaching peak levels - watch for resistance")
    elif direction == Direction.DOWN:
        if strength > 0.7 and momentum == Momentum.STRONG:
            notes.append("Strong downward trend - watch for capitulation")
        elif strength > 0.4:
            notes.append("Moderate downward trend - monitor for stabilization")
        if key_points.trough > 0 and key_points.current < key_points.trough * 1.05:
            notes.append("Approaching trough levels - watch for support")
    else:
        notes.append("Stable trend - current levels appear consolidated")

    if volatility > high_volatility:
        notes.append("High volatility detected - trend may be less reliable")
    return tuple(notes)


def _degenerate(samples: Sequence[Sample]) -> TrendAnalysis:
    value = samples[0].value if samples else 0.0
    return TrendAnalysis(
        direction=Direction.STABLE,
        strength=0.0,
        momentum=Momentum.WEAK,
        volatility=0.0,
        confidence=0.0,
        slope=0.0,
        intercept=value,
        r_squared=0.0,
        sample_count=len(samples),
        low_confidence=True,
        key_points=KeyPoints(peak=value, trough=value, current=value),
        recommendations=("Insufficient data for trend analysis",),
    )


def analyze_trend(samples: Sequence[Sample], *, config: TrendConfig = DEFAULT_TREND_CONFIG) -> TrendAnalysis:
    """
    Fit and classify the trend of ``samples`` (sorted ascending).

    Zero or one sample yields a stable, zero-confidence result.
    """
    n = len(samples)
    if n < 2:
        return _degenerate(samples)

    values = [s.value for s in samples]
    fit = fit_line(normalized_time_index(samples), values)

    mu = mean(values)
    scale = _value_scale(values, mu)
    slope_norm = fit.slope / scale

    if abs(slope_norm) < config.stable_threshold:
        direction = Direction.STABLE
    else:
        direction = Direction.UP if fit.slope > 0 else Direction.DOWN

    strength = min(1.0, abs(slope_norm) / config.strength_scale_factor)
    momentum = classify_momentum(values, scale, config)
    volatility = population_stddev(fit.residuals, center=mean(fit.residuals)) / abs(mu) if mu != 0 else 0.0
    confidence = fit.r_squared * min(1.0, n / config.min_samples_for_full_confidence)

    key_points = KeyPoints(peak=max(values), trough=min(values), current=values[-1])

    return TrendAnalysis(
        direction=direction,
        strength=strength,
        momentum=momentum,
        volatility=volatility,
        confidence=min(1.0, max(0.0, confidence)),
        slope=fit.slope,
        intercept=fit.intercept,
        r_squared=fit.r_squared,
        sample_count=n,
        low_confidence=n < config.min_samples_for_full_confidence,
        key_points=key_points,
        recommendations=build_recommendations(
            direction=direction,
            strength=strength,
            momentum=momentum,
            volatility=volatility,
            key_points=key_points,
            high_volatility=config.high_volatility,
        ),
    )
