"""Domain layer: value objects, errors and pure analysis functions."""

from metric_sentinel.domain.baseline import compute_baselines
from metric_sentinel.domain.errors import (
    CoalescingTimeoutError,
    ConfigurationError,
    EngineError,
    InvalidKeyError,
    SourceRateLimitedError,
    SourceUnavailableError,
    ValidationError,
)
from metric_sentinel.domain.models import (
    AnalysisMetadata,
    AnalysisResult,
    Baseline,
    ComputedAnalysis,
    Direction,
    KeyPoints,
    MetricKey,
    Momentum,
    Sample,
    Severity,
    SpikeResult,
    Timeframe,
    TrendAnalysis,
    Window,
    normalize_samples,
)
from metric_sentinel.domain.spike import SpikeThresholds, detect_spike
from metric_sentinel.domain.trend import TrendConfig, analyze_trend

__all__ = [
    # Models
    "AnalysisMetadata",
    "AnalysisResult",
    "Baseline",
    "ComputedAnalysis",
    "Direction",
    "KeyPoints",
    "MetricKey",
    "Momentum",
    "Sample",
    "Severity",
    "SpikeResult",
    "Timeframe",
    "TrendAnalysis",
    "Window",
    "normalize_samples",
    # Calculators
    "compute_baselines",
    "detect_spike",
    "SpikeThresholds",
    "analyze_trend",
    "TrendConfig",
    # Errors
    "EngineError",
    "ValidationError",
    "InvalidKeyError",
    "ConfigurationError",
    "SourceUnavailableError",
    "SourceRateLimitedError",
    "CoalescingTimeoutError",
]
