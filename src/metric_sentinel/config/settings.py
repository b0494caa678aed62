"""
Settings management using Pydantic.

Loads configuration from YAML files and environment variables.
Environment variables override YAML values.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from metric_sentinel.domain.models import Timeframe, Window
from metric_sentinel.domain.spike import SpikeThresholds
from metric_sentinel.domain.trend import TrendConfig

logger = logging.getLogger(__name__)


class SpikeThresholdSettings(BaseModel):
    """Percent deviation at which each severity tier starts."""

    low: float = Field(default=50.0, ge=0)
    medium: float = Field(default=100.0, ge=0)
    high: float = Field(default=200.0, ge=0)

    def to_thresholds(self) -> SpikeThresholds:
        return SpikeThresholds(low=self.low, medium=self.medium, high=self.high)


class AnalysisSettings(BaseModel):
    """Baseline, spike and trend parameters."""

    baseline_windows: list[Window] = Field(default_factory=lambda: [Window.D7, Window.D30, Window.D90])
    moving_average_length: int = Field(default=5, ge=1)
    # Trailing span (fraction of the key timeframe, measured back from the
    # latest sample) held out of the reference history so a sustained jump is
    # judged against what came before it. Never more than half the series.
    holdout_fraction: float = Field(default=0.2, ge=0, le=1)
    spike_baseline_window: Window = Window.D30
    spike_severity_thresholds: SpikeThresholdSettings = Field(default_factory=SpikeThresholdSettings)

    # Trend
    min_samples_for_full_confidence: int = Field(default=14, ge=1)
    strength_scale_factor: float = Field(default=0.5, gt=0)
    stable_threshold: float = Field(default=0.01, ge=0)  # 1% of the mean value
    momentum_window: int = Field(default=5, ge=3)
    momentum_moderate: float = 0.01
    momentum_strong: float = 0.05
    high_volatility: float = 0.2

    def trend_config(self) -> TrendConfig:
        return TrendConfig(
            min_samples_for_full_confidence=self.min_samples_for_full_confidence,
            strength_scale_factor=self.strength_scale_factor,
            stable_threshold=self.stable_threshold,
            momentum_window=self.momentum_window,
            momentum_moderate=self.momentum_moderate,
            momentum_strong=self.momentum_strong,
            high_volatility=self.high_volatility,
        )

    def reference_window(self) -> Window:
        """Window the spike is judged against (falls back to the largest configured)."""
        if self.spike_baseline_window in self.baseline_windows:
            return self.spike_baseline_window
        return max(self.baseline_windows, key=lambda w: w.duration)


def _default_ttls() -> dict[Timeframe, float]:
    return {
        Timeframe.H24: 300.0,  # 5 min
        Timeframe.D7: 900.0,  # 15 min
        Timeframe.D30: 1800.0,  # 30 min
        Timeframe.D90: 1800.0,
    }


class CacheSettings(BaseModel):
    """Coalescing cache and prefetch queue."""

    ttl_by_timeframe: dict[Timeframe, float] = Field(
        default_factory=_default_ttls,
        description="Seconds a computed result stays fresh, per timeframe.",
    )
    default_ttl_seconds: float = Field(default=300.0, gt=0)
    max_entries: int = Field(default=1000, ge=1)
    max_concurrent_prefetch: int = Field(default=2, ge=1)
    prefetch_queue_size: int = Field(default=100, ge=1)
    prefetch_adjacent: bool = True
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    stale_while_revalidate: bool = False

    def ttl_for(self, timeframe: Timeframe) -> float:
        return float(self.ttl_by_timeframe.get(timeframe, self.default_ttl_seconds))


class SourceSettings(BaseModel):
    """Sample source adapters."""

    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # SQLite sample store (read side)
    sqlite_path: str = "data/metrics.db"

    # HTTP metric API
    http_base_url: str = ""
    http_api_key: str = ""
    http_rate_limit_per_minute: int = Field(default=600, ge=1)
    http_max_retries: int = Field(default=3, ge=0)
    http_retry_base_delay_ms: int = Field(default=500, ge=0)


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    file_enabled: bool = False
    file_dir: str = "logs"
    json_enabled: bool = False
    json_file: str = "logs/metric_sentinel.jsonl"
    # Set to 0 to disable rotation.
    json_max_bytes: int = 50_000_000
    json_backup_count: int = 3


class Settings(BaseSettings):
    """
    Main settings container.

    Loads from YAML file based on environment, then applies env var overrides.
    """

    env: str = Field(default="development", alias="SENTINEL_ENV")
    testing_mode: bool = False

    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    source: SourceSettings = Field(default_factory=SourceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = {
        "env_prefix": "SENTINEL_",
        "env_nested_delimiter": "__",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # SENTINEL_* variables override values passed in from YAML
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def validate_settings(self) -> list[str]:
        """
        Check cross-field constraints pydantic cannot express per field.

        Returns a list of error messages; empty means the settings are usable.
        """
        errors: list[str] = []

        thresholds = self.analysis.spike_severity_thresholds
        if not (thresholds.low <= thresholds.medium <= thresholds.high):
            errors.append(
                "analysis.spike_severity_thresholds must be ascending "
                f"(low={thresholds.low}, medium={thresholds.medium}, high={thresholds.high})"
            )

        if not self.analysis.baseline_windows:
            errors.append("analysis.baseline_windows must not be empty")

        if self.analysis.momentum_moderate > self.analysis.momentum_strong:
            errors.append("analysis.momentum_moderate must not exceed analysis.momentum_strong")

        for timeframe, ttl in self.cache.ttl_by_timeframe.items():
            if ttl <= 0:
                errors.append(f"cache.ttl_by_timeframe[{timeframe.value}] must be positive")

        return errors

    @classmethod
    def from_yaml(cls, env: str = "development", path: Path | None = None) -> Settings:
        """
        Load settings from config.yaml (or an explicit path).

        ``{env}.yaml`` next to it, if present, is deep-merged on top.
        """
        config_dir = Path(__file__).parent
        yaml_file = path or config_dir / "config.yaml"

        data: dict = {}
        if yaml_file.exists():
            with open(yaml_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

        env_file = yaml_file.parent / f"{env}.yaml"
        if env_file.exists() and env_file != yaml_file:
            with open(env_file, encoding="utf-8") as f:
                env_data = yaml.safe_load(f) or {}
            data = _deep_merge(data, env_data)

        # Shortcut env vars for the most commonly overridden values
        if "source" not in data:
            data["source"] = {}
        if os.getenv("SENTINEL_DB_PATH"):
            data["source"]["sqlite_path"] = os.getenv("SENTINEL_DB_PATH")
        if os.getenv("SENTINEL_API_URL"):
            data["source"]["http_base_url"] = os.getenv("SENTINEL_API_URL")
        if os.getenv("SENTINEL_API_KEY"):
            data["source"]["http_api_key"] = os.getenv("SENTINEL_API_KEY")
        if os.getenv("SENTINEL_LOG_LEVEL"):
            data.setdefault("logging", {})
            data["logging"]["level"] = os.getenv("SENTINEL_LOG_LEVEL")

        data["env"] = env

        _warn_unknown_keys(data, cls)

        return cls(**data)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts, override wins on conflicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _collect_all_keys(data: dict, prefix: str = "") -> set[str]:
    """Recursively collect dot-notation keys from a nested dict."""
    keys = set()
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        keys.add(full_key)
        if isinstance(value, dict):
            keys.update(_collect_all_keys(value, full_key))
    return keys


def _collect_model_fields(model_class: type[BaseModel], prefix: str = "") -> set[str]:
    """Recursively collect dot-notation field names from a Pydantic model."""
    fields = set()
    for field_name, field_info in model_class.model_fields.items():
        full_key = f"{prefix}.{field_name}" if prefix else field_name
        fields.add(full_key)
        annotation = field_info.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            fields.update(_collect_model_fields(annotation, full_key))
        elif getattr(annotation, "__origin__", None) is dict:
            # Free-form mapping (e.g. ttl_by_timeframe): accept any child key
            fields.add(f"{full_key}.*")
    return fields


def _warn_unknown_keys(data: dict, model_class: type[BaseModel]) -> None:
    """Warn about YAML keys that don't match model fields (typos are otherwise silent)."""
    yaml_keys = _collect_all_keys(data)
    model_fields = _collect_model_fields(model_class)

    wildcard_parents = {f[:-2] for f in model_fields if f.endswith(".*")}
    unknown_keys = {
        k for k in yaml_keys - model_fields if not any(k.startswith(f"{p}.") for p in wildcard_parents)
    }

    if unknown_keys:
        logger.warning(
            f"Unknown configuration keys found (will be ignored due to extra='ignore'): {sorted(unknown_keys)}. "
            f"This may indicate typos in config.yaml or outdated config keys."
        )


@lru_cache(maxsize=4)
def get_settings(env: str | None = None) -> Settings:
    """Get cached settings instance."""
    resolved_env = env or os.getenv("SENTINEL_ENV", "development")
    return Settings.from_yaml(env=resolved_env)
