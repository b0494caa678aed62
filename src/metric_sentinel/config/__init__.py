"""Configuration: pydantic settings loaded from YAML and environment."""

from metric_sentinel.config.settings import (
    AnalysisSettings,
    CacheSettings,
    LoggingSettings,
    Settings,
    SourceSettings,
    get_settings,
)

__all__ = [
    "Settings",
    "AnalysisSettings",
    "CacheSettings",
    "SourceSettings",
    "LoggingSettings",
    "get_settings",
]
