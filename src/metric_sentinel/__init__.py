"""
Metric Sentinel: baseline, spike and trend analysis for metric time series.

Architecture: Hexagonal (Ports & Adapters)
- domain/: value objects, errors and pure calculators
- ports/: abstract interfaces (sample sources)
- adapters/: in-memory, SQLite and HTTP sample sources
- services/: analysis engine, coalescing cache, prefetch, rate limiting
- config/: pydantic settings loaded from YAML and environment
- observability/: logging and Prometheus metrics
"""

__version__ = "0.1.0"
