"""
Entry points for CLI commands.

Each command sets up settings and logging, builds the engine and prints JSON
to stdout (logs go to stderr).
"""

from __future__ import annotations

import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

# Load .env file BEFORE importing settings
from dotenv import load_dotenv

for env_path in [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent.parent / ".env",  # Project root
]:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()

from metric_sentinel.adapters.sources import HttpSampleSource, SqliteSampleSource  # noqa: E402
from metric_sentinel.config.settings import Settings, get_settings  # noqa: E402
from metric_sentinel.domain.errors import EngineError, SourceUnavailableError  # noqa: E402
from metric_sentinel.domain.models import MetricKey, Severity, Timeframe  # noqa: E402
from metric_sentinel.observability.logging import get_logger, setup_logging  # noqa: E402
from metric_sentinel.ports.sample_source import SampleSourcePort  # noqa: E402
from metric_sentinel.services.engine import AnalysisEngine  # noqa: E402

logger = get_logger(__name__)


def build_source(settings: Settings, kind: str = "sqlite", db_path: str | None = None) -> SampleSourcePort:
    """Construct the sample source named by ``kind`` ("sqlite" or "http")."""
    if kind == "sqlite":
        return SqliteSampleSource(settings, db_path=db_path)
    if kind == "http":
        return HttpSampleSource(settings)
    raise ValueError(f"Unknown source kind: {kind}")


def _load_settings(env: str) -> Settings | None:
    settings = get_settings(env)
    setup_logging(settings)
    errors = settings.validate_settings()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return None
    return settings


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str))
    sys.stdout.write("\n")


async def run_analyze(
    keys: Sequence[str],
    *,
    env: str = "development",
    force: bool = False,
    source_kind: str = "sqlite",
    db_path: str | None = None,
) -> int:
    """
    Analyse the given keys and print one JSON object per key.

    Returns:
        Exit code: 0 = success, 1 = engine error, 2 = configuration error.
    """
    settings = _load_settings(env)
    if settings is None:
        return 2

    try:
        parsed = [MetricKey.parse(k) for k in keys]
    except EngineError as e:
        logger.error(e.message)
        return 2

    source = build_source(settings, source_kind, db_path)
    output: list[dict[str, Any]] = []
    exit_code = 0

    try:
        async with AnalysisEngine(settings, source) as engine:
            results = await engine.get_batch_analysis(parsed, force_refresh=force)
            for key, result in results.items():
                if isinstance(result, EngineError):
                    output.append({"key": str(key), "error": result.to_dict()})
                    exit_code = 1
                else:
                    output.append(result.to_dict())
    except SourceUnavailableError as e:
        logger.error(f"Sample source unavailable: {e.message}")
        return 1

    _emit(output)
    return exit_code


async def run_scan(
    *,
    env: str = "development",
    timeframe: str = "7d",
    min_severity: str = "low",
    db_path: str | None = None,
) -> int:
    """
    Analyse every series in the SQLite store and print those with spikes.

    Returns:
        Exit code: 0 = success, 1 = source error, 2 = configuration error.
    """
    settings = _load_settings(env)
    if settings is None:
        return 2

    try:
        tf = Timeframe.from_string(timeframe)
        threshold = Severity(min_severity)
    except (EngineError, ValueError) as e:
        logger.error(f"Invalid scan option: {e}")
        return 2

    source = SqliteSampleSource(settings, db_path=db_path)
    try:
        async with AnalysisEngine(settings, source) as engine:
            series = await source.list_series()
            keys = [MetricKey(asset_id, metric_name, tf) for asset_id, metric_name in series]
            logger.info(f"Scanning {len(keys)} series ({tf.value})")
            results = await engine.get_batch_analysis(keys)
    except SourceUnavailableError as e:
        logger.error(f"Sample source unavailable: {e.message}")
        return 1

    spikes = [
        {
            "key": str(key),
            "severity": result.spike.severity.value,
            "deviation_percent": round(result.spike.deviation_percent, 2),
            "reason": result.spike.reason,
            "trend": result.trend.direction.value,
            "confidence": round(result.metadata.confidence, 3),
        }
        for key, result in results.items()
        if not isinstance(result, EngineError) and result.spike.severity.rank >= max(threshold.rank, 1)
    ]
    spikes.sort(key=lambda s: abs(s["deviation_percent"]), reverse=True)
    _emit({"timeframe": tf.value, "scanned": len(results), "spikes": spikes})
    return 0


async def run_check_config(env: str = "development") -> int:
    """Validate configuration and print the effective settings."""
    settings = get_settings(env)
    setup_logging(settings)
    errors = settings.validate_settings()
    _emit(
        {
            "env": settings.env,
            "valid": not errors,
            "errors": errors,
            "settings": settings.model_dump(mode="json", exclude={"source": {"http_api_key"}}),
        }
    )
    return 0 if not errors else 2
