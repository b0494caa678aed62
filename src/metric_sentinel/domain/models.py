"""
Canonical Domain Models.

Samples, keys and the value objects produced by the analysis pipeline.
Everything here is immutable once constructed - the cache hands out the
same instances to every caller.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from metric_sentinel.domain.errors import InvalidKeyError

# =============================================================================
# ENUMS
# =============================================================================


class Timeframe(str, Enum):
    """Analysis horizon requested by a caller."""

    H24 = "24h"
    D7 = "7d"
    D30 = "30d"
    D90 = "90d"

    @property
    def duration(self) -> timedelta:
        return _DURATIONS[self.value]

    def adjacent(self) -> list[Timeframe]:
        """Neighbouring timeframes (previous and next), used for prefetch."""
        ordered = list(Timeframe)
        idx = ordered.index(self)
        return [ordered[i] for i in (idx - 1, idx + 1) if 0 <= i < len(ordered)]

    @classmethod
    def from_string(cls, value: str | Timeframe) -> Timeframe:
        """Parse a timeframe, raising InvalidKeyError for unknown values."""
        if isinstance(value, Timeframe):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise InvalidKeyError(f"Unknown timeframe: {value!r}", details={"timeframe": str(value)})


class Window(str, Enum):
    """Baseline window size."""

    D7 = "7d"
    D30 = "30d"
    D90 = "90d"

    @property
    def duration(self) -> timedelta:
        return _DURATIONS[self.value]


_DURATIONS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}


class Severity(str, Enum):
    """Spike severity tiers, ordered from benign to critical."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.NONE: 0, Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class Direction(str, Enum):
    """Trend direction."""

    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class Momentum(str, Enum):
    """Acceleration bucket of recent values."""

    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"


# =============================================================================
# SAMPLES & KEYS
# =============================================================================


@dataclass(frozen=True)
class Sample:
    """A single observation of a metric."""

    timestamp: datetime
    value: float

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value}


def normalize_samples(samples: Iterable[Sample]) -> list[Sample]:
    """
    Sort ascending by timestamp, keep the latest write per timestamp.

    Non-finite values are dropped; they would otherwise poison every
    downstream statistic.
    """
    by_ts: dict[datetime, Sample] = {}
    for sample in samples:
        if not math.isfinite(sample.value):
            continue
        by_ts[sample.timestamp] = sample
    return [by_ts[ts] for ts in sorted(by_ts)]


_FORBIDDEN_KEY_CHARS = frozenset("*?[]:")


def _validate_key_part(name: str, value: object) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidKeyError(f"{name} must be a non-empty string", details={name: repr(value)})
    if any(ch.isspace() for ch in value) or _FORBIDDEN_KEY_CHARS.intersection(value):
        raise InvalidKeyError(f"{name} contains forbidden characters: {value!r}", details={name: value})
    return value


@dataclass(frozen=True)
class MetricKey:
    """
    Identity of a cached analysis: (asset, metric, timeframe).

    Equality is case-sensitive on all three fields.
    """

    asset_id: str
    metric_name: str
    timeframe: Timeframe

    def __post_init__(self) -> None:
        _validate_key_part("asset_id", self.asset_id)
        _validate_key_part("metric_name", self.metric_name)
        # Accept "7d" etc. for convenience; frozen dataclass needs object.__setattr__
        object.__setattr__(self, "timeframe", Timeframe.from_string(self.timeframe))

    def __str__(self) -> str:
        return f"{self.asset_id}:{self.metric_name}:{self.timeframe.value}"

    @classmethod
    def parse(cls, text: str) -> MetricKey:
        """Inverse of ``str(key)``."""
        parts = text.split(":") if isinstance(text, str) else []
        if len(parts) != 3:
            raise InvalidKeyError(f"Expected 'asset:metric:timeframe', got {text!r}")
        return cls(parts[0], parts[1], Timeframe.from_string(parts[2]))

    def with_timeframe(self, timeframe: Timeframe) -> MetricKey:
        return MetricKey(self.asset_id, self.metric_name, timeframe)


# =============================================================================
# ANALYSIS RESULTS
# =============================================================================


@dataclass(frozen=True)
class Baseline:
    """Rolling summary statistics over one window."""

    window: Window
    mean: float
    stddev: float
    moving_average: float
    sample_count: int
    computed_at: datetime
    minimum: float = 0.0
    maximum: float = 0.0
    low_confidence: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": self.window.value,
            "mean": self.mean,
            "stddev": self.stddev,
            "moving_average": self.moving_average,
            "min": self.minimum,
            "max": self.maximum,
            "sample_count": self.sample_count,
            "computed_at": self.computed_at.isoformat(),
            "low_confidence": self.low_confidence,
        }


@dataclass(frozen=True)
class SpikeResult:
    """Classification of the current value against a baseline."""

    is_spike: bool
    severity: Severity
    current_value: float
    baseline_value: float
    deviation_percent: float
    reason: str
    window: Window | None = None
    capped: bool = False

    def __post_init__(self) -> None:
        if (self.severity != Severity.NONE) != self.is_spike:
            raise ValueError(f"is_spike={self.is_spike} inconsistent with severity={self.severity.value}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_spike": self.is_spike,
            "severity": self.severity.value,
            "current_value": self.current_value,
            "baseline_value": self.baseline_value,
            "deviation_percent": self.deviation_percent,
            "reason": self.reason,
            "window": self.window.value if self.window else None,
            "capped": self.capped,
        }


@dataclass(frozen=True)
class KeyPoints:
    """Notable values of the analysed series."""

    peak: float = 0.0
    trough: float = 0.0
    current: float = 0.0


@dataclass(frozen=True)
class TrendAnalysis:
    """Linear trend fit and derived classifications."""

    direction: Direction
    strength: float
    momentum: Momentum
    volatility: float
    confidence: float
    slope: float
    intercept: float
    r_squared: float
    sample_count: int = 0
    low_confidence: bool = True
    key_points: KeyPoints = field(default_factory=KeyPoints)
    recommendations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction.value,
            "strength": self.strength,
            "momentum": self.momentum.value,
            "volatility": self.volatility,
            "confidence": self.confidence,
            "trendline": {
                "slope": self.slope,
                "intercept": self.intercept,
                "r_squared": self.r_squared,
            },
            "key_points": {
                "peak": self.key_points.peak,
                "trough": self.key_points.trough,
                "current": self.key_points.current,
            },
            "sample_count": self.sample_count,
            "low_confidence": self.low_confidence,
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class ComputedAnalysis:
    """
    What the cache stores for a key.

    All parts derive from the same sample fetch.
    """

    key: MetricKey
    baselines: dict[Window, Baseline]
    reference_window: Window
    spike: SpikeResult
    trend: TrendAnalysis
    sample_count: int
    source: str
    load_time_ms: float
    compute_time_ms: float
    computed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    degraded: bool = False

    @property
    def baseline(self) -> Baseline:
        return self.baselines[self.reference_window]

    @property
    def confidence(self) -> float:
        """Overall confidence; insufficient history never reports above 0.3."""
        if self.degraded:
            return 0.0
        confidence = self.trend.confidence
        if self.baseline.low_confidence:
            confidence = min(confidence, LOW_CONFIDENCE_CEILING)
        return confidence


LOW_CONFIDENCE_CEILING = 0.3


@dataclass(frozen=True)
class AnalysisMetadata:
    """How an AnalysisResult was produced."""

    source: str
    cache_hit: bool
    load_time_ms: float
    compute_time_ms: float
    confidence: float
    sample_count: int = 0
    degraded: bool = False
    stored_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "cache_hit": self.cache_hit,
            "load_time_ms": round(self.load_time_ms, 3),
            "compute_time_ms": round(self.compute_time_ms, 3),
            "confidence": self.confidence,
            "sample_count": self.sample_count,
            "degraded": self.degraded,
            "stored_at": self.stored_at.isoformat() if self.stored_at else None,
        }


@dataclass(frozen=True)
class AnalysisResult:
    """Engine response for one MetricKey."""

    key: MetricKey
    baselines: dict[Window, Baseline]
    reference_window: Window
    spike: SpikeResult
    trend: TrendAnalysis
    metadata: AnalysisMetadata

    @property
    def baseline(self) -> Baseline:
        return self.baselines[self.reference_window]

    @classmethod
    def from_computed(cls, computed: ComputedAnalysis, metadata: AnalysisMetadata) -> AnalysisResult:
        return cls(
            key=computed.key,
            baselines=computed.baselines,
            reference_window=computed.reference_window,
            spike=computed.spike,
            trend=computed.trend,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": str(self.key),
            "asset_id": self.key.asset_id,
            "metric_name": self.key.metric_name,
            "timeframe": self.key.timeframe.value,
            "baseline": self.baseline.to_dict(),
            "baselines": {w.value: b.to_dict() for w, b in self.baselines.items()},
            "spike": self.spike.to_dict(),
            "trend": self.trend.to_dict(),
            "metadata": self.metadata.to_dict(),
        }
