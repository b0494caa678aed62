"""
Analysis Engine.

Facade over the sample source, the pure calculators and the coalescing
cache:

    caller -> cache (hit: return | miss: single flight)
           -> source.fetch_samples -> baselines + spike + trend
           -> cache store -> caller
           -> prefetch adjacent timeframes (background)

Source failures are never cached. The caller gets a degraded fallback result
(confidence 0) unless it forced a refresh, in which case the
SourceUnavailableError is raised.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime
from functools import partial
from typing import Any

from metric_sentinel.config.settings import Settings
from metric_sentinel.domain.baseline import compute_baselines
from metric_sentinel.domain.errors import (
    ConfigurationError,
    EngineError,
    InvalidKeyError,
    SourceUnavailableError,
)
from metric_sentinel.domain.models import (
    AnalysisMetadata,
    AnalysisResult,
    ComputedAnalysis,
    MetricKey,
    Sample,
    Severity,
    SpikeResult,
    Timeframe,
    normalize_samples,
)
from metric_sentinel.domain.spike import detect_spike
from metric_sentinel.domain.trend import analyze_trend
from metric_sentinel.observability.logging import LOG_TAG_SPIKE, get_logger
from metric_sentinel.observability.metrics import (
    record_cache_lookup,
    record_computation,
    record_source_failure,
    record_spike,
)
from metric_sentinel.ports.sample_source import SampleSourcePort
from metric_sentinel.services.cache import CacheOutcome, CoalescingCache

logger = get_logger(__name__)

# Health classification
UNHEALTHY_ERROR_RATE = 0.1
UNHEALTHY_SOURCE_ERRORS = 50
DEGRADED_HIT_RATE = 0.5
DEGRADED_AVG_COMPUTE_MS = 5000.0
MIN_LOOKUPS_FOR_HIT_RATE = 10

FALLBACK_SOURCE = "fallback"
CACHE_SOURCE = "cache"

# Callers joining a flight outwait the source deadline by this margin
FLIGHT_GRACE_SECONDS = 1.0


class AnalysisEngine:
    """
    Baseline, spike and trend analysis with a coalescing cache.

    Args:
        settings: Application settings (analysis, cache, source sections).
        source: Where samples come from.
        cache: Injected cache; built from ``settings.cache`` when omitted.
        clock: Returns "now" (UTC); analysis windows end at this instant.

    Raises:
        ConfigurationError: ``settings.validate_settings()`` reported errors.
    """

    def __init__(
        self,
        settings: Settings,
        source: SampleSourcePort,
        *,
        cache: CoalescingCache[MetricKey, ComputedAnalysis] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        errors = settings.validate_settings()
        if errors:
            raise ConfigurationError(f"Invalid settings: {'; '.join(errors)}", details={"errors": errors})

        self.settings = settings
        self.source = source
        self._clock = clock or (lambda: datetime.now(UTC))

        analysis = settings.analysis
        self._windows = list(analysis.baseline_windows)
        self._reference_window = analysis.reference_window()
        self._thresholds = analysis.spike_severity_thresholds.to_thresholds()
        self._trend_config = analysis.trend_config()
        self._lookback = max(w.duration for w in self._windows)
        self._timeout = settings.source.request_timeout_seconds

        self.cache: CoalescingCache[MetricKey, ComputedAnalysis] = cache or CoalescingCache(
            ttl_for=lambda key: settings.cache.ttl_for(key.timeframe),
            max_entries=settings.cache.max_entries,
            default_timeout=self._timeout + FLIGHT_GRACE_SECONDS,
            sweep_interval=settings.cache.sweep_interval_seconds,
            stale_while_revalidate=settings.cache.stale_while_revalidate,
            prefetch_queue_size=settings.cache.prefetch_queue_size,
            max_concurrent_prefetch=settings.cache.max_concurrent_prefetch,
        )

        # Engine-level counters (cache keeps its own)
        self._source_errors = 0
        self._fallbacks = 0
        self._compute_count = 0
        self._compute_ms_total = 0.0
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            return
        logger.info(f"Starting AnalysisEngine (source={self.source.name})...")
        await self.source.initialize()
        await self.cache.start()
        self._running = True
        logger.info("AnalysisEngine started")

    async def stop(self) -> None:
        await self.cache.stop()
        await self.source.close()
        self._running = False
        logger.info("AnalysisEngine stopped")

    async def __aenter__(self) -> AnalysisEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_analysis(
        self,
        key: MetricKey | str,
        force_refresh: bool = False,
        *,
        timeout: float | None = None,
    ) -> AnalysisResult:
        """
        Analysis for one key, served from cache when fresh.

        Raises:
            InvalidKeyError: malformed key.
            CoalescingTimeoutError: waited longer than ``timeout`` on a computation, or
                joined another caller's computation that outlived the source deadline.
            SourceUnavailableError: only with ``force_refresh=True``.
        """
        key = _coerce_key(key)
        started = time.perf_counter()

        try:
            lookup = await self.cache.get_or_compute(
                key,
                partial(self._compute, key),
                force=force_refresh,
                timeout=timeout,
            )
        except SourceUnavailableError as e:
            if force_refresh:
                logger.warning(
                    f"Forced refresh of {key} failed: {e.message}",
                    extra={"key": str(key), "error_code": e.error_code},
                )
                raise
            logger.warning(
                f"Source unavailable for {key}, returning fallback: {e.message}",
                extra={"key": str(key), "error_code": e.error_code},
            )
            return self._fallback(key, e, elapsed_ms=(time.perf_counter() - started) * 1000)

        record_cache_lookup(key.timeframe.value, lookup.outcome.value)
        computed = lookup.value

        if lookup.outcome in (CacheOutcome.MISS, CacheOutcome.FORCED) and self.settings.cache.prefetch_adjacent:
            self._prefetch_adjacent(key)

        if lookup.cache_hit:
            metadata = AnalysisMetadata(
                source=CACHE_SOURCE,
                cache_hit=True,
                load_time_ms=(time.perf_counter() - started) * 1000,
                compute_time_ms=0.0,
                confidence=computed.confidence,
                sample_count=computed.sample_count,
                degraded=computed.degraded,
                stored_at=lookup.stored_at,
            )
        else:
            metadata = AnalysisMetadata(
                source=computed.source,
                cache_hit=False,
                load_time_ms=computed.load_time_ms,
                compute_time_ms=computed.compute_time_ms,
                confidence=computed.confidence,
                sample_count=computed.sample_count,
                degraded=computed.degraded,
                stored_at=lookup.stored_at,
            )
        return AnalysisResult.from_computed(computed, metadata)

    async def get_batch_analysis(
        self,
        keys: Iterable[MetricKey | str],
        force_refresh: bool = False,
    ) -> dict[MetricKey, AnalysisResult | EngineError]:
        """
        Analyse several keys concurrently.

        All keys are validated up front. Per-key engine errors (e.g. a
        coalescing timeout) are returned in place of that key's result.
        """
        parsed = [_coerce_key(k) for k in keys]
        unique = list(dict.fromkeys(parsed))
        outcomes = await asyncio.gather(
            *(self.get_analysis(k, force_refresh) for k in unique),
            return_exceptions=True,
        )

        results: dict[MetricKey, AnalysisResult | EngineError] = {}
        for key, outcome in zip(unique, outcomes, strict=True):
            if isinstance(outcome, EngineError):
                results[key] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[key] = outcome
        return results

    async def get_multi_timeframe(
        self,
        asset_id: str,
        metric_name: str,
        timeframes: Iterable[Timeframe | str] | None = None,
    ) -> dict[Timeframe, AnalysisResult]:
        """Analysis of one series across timeframes (all of them by default)."""
        wanted = [Timeframe.from_string(tf) for tf in (timeframes or list(Timeframe))]
        keys = [MetricKey(asset_id, metric_name, tf) for tf in wanted]
        results = await asyncio.gather(*(self.get_analysis(k) for k in keys))
        return {k.timeframe: r for k, r in zip(keys, results, strict=True)}

    def invalidate(self, pattern: MetricKey | str) -> int:
        """Drop cached results matching an exact key, glob or prefix."""
        return self.cache.invalidate(pattern)

    def get_stats(self) -> dict[str, Any]:
        """
        Engine statistics.

        ``health`` is unhealthy when the computation error rate exceeds 10%
        or sources failed more than 50 times, degraded when the hit rate is
        under 50% (after a minimum number of lookups) or computations
        average more than 5 s.
        """
        cache_stats = self.cache.get_stats()
        avg_compute_ms = self._compute_ms_total / self._compute_count if self._compute_count else 0.0

        health = "healthy"
        if cache_stats.error_rate > UNHEALTHY_ERROR_RATE or self._source_errors > UNHEALTHY_SOURCE_ERRORS:
            health = "unhealthy"
        elif (
            cache_stats.lookups >= MIN_LOOKUPS_FOR_HIT_RATE and cache_stats.hit_rate < DEGRADED_HIT_RATE
        ) or avg_compute_ms > DEGRADED_AVG_COMPUTE_MS:
            health = "degraded"

        return {
            "cache_size": cache_stats.size,
            "hit_rate": cache_stats.hit_rate,
            "in_flight_count": cache_stats.in_flight,
            "prefetch_queue_depth": cache_stats.prefetch.queue_depth,
            "health": health,
            "source": self.source.name,
            "source_errors": self._source_errors,
            "fallbacks": self._fallbacks,
            "average_compute_ms": round(avg_compute_ms, 3),
            "cache": cache_stats.to_dict(),
        }

    # =========================================================================
    # Computation
    # =========================================================================

    async def _compute(self, key: MetricKey) -> ComputedAnalysis:
        now = self._clock()
        start = now - max(key.timeframe.duration, self._lookback)

        load_started = time.perf_counter()
        samples = await self._load(key, start, now)
        load_ms = (time.perf_counter() - load_started) * 1000

        compute_started = time.perf_counter()
        computed = self.analyze_samples(key, samples, now=now, load_time_ms=load_ms)
        compute_ms = (time.perf_counter() - compute_started) * 1000
        computed = _with_compute_time(computed, compute_ms)

        self._compute_count += 1
        self._compute_ms_total += load_ms + compute_ms
        record_computation(key.timeframe.value, "success", (load_ms + compute_ms) / 1000)

        if computed.spike.is_spike:
            record_spike(computed.spike.severity.value)
            logger.info(
                f"{LOG_TAG_SPIKE} {key}: {computed.spike.reason}",
                extra={
                    "key": str(key),
                    "asset_id": key.asset_id,
                    "metric_name": key.metric_name,
                    "timeframe": key.timeframe.value,
                },
            )
        return computed

    async def _load(self, key: MetricKey, start: datetime, end: datetime) -> list[Sample]:
        try:
            return await asyncio.wait_for(
                self.source.fetch_samples(key.asset_id, key.metric_name, start, end),
                timeout=self._timeout,
            )
        except SourceUnavailableError as e:
            self._record_source_error(key, e)
            raise
        except TimeoutError as e:
            error = SourceUnavailableError(
                f"{self.source.name} timed out after {self._timeout}s",
                source=self.source.name,
                key=key,
            )
            self._record_source_error(key, error)
            raise error from e
        except Exception as e:
            error = SourceUnavailableError(
                f"{self.source.name} failed: {e!r}",
                source=self.source.name,
                key=key,
            )
            self._record_source_error(key, error)
            raise error from e

    def analyze_samples(
        self,
        key: MetricKey,
        samples: Iterable[Sample],
        *,
        now: datetime | None = None,
        load_time_ms: float = 0.0,
    ) -> ComputedAnalysis:
        """
        Run baselines, spike detection and trend on already-loaded samples.

        Baselines use the reference history: the series minus its samples
        newer than ``holdout_fraction`` of the key's timeframe before the
        latest sample (never more than half of it), so the latest values are
        judged against what preceded them whatever the sampling rate. The
        trend covers the key's timeframe.
        """
        now = now or self._clock()
        series = normalize_samples(samples)

        reference = series[: len(series) - self._holdout_count(key, series)]

        baselines = compute_baselines(
            reference,
            self._windows,
            now=now,
            moving_average_length=self.settings.analysis.moving_average_length,
        )
        current = series[-1].value if series else 0.0
        spike = detect_spike(
            current,
            baselines[self._reference_window],
            metric_name=key.metric_name,
            thresholds=self._thresholds,
        )

        timeframe_start = now - key.timeframe.duration
        trend_samples = [s for s in series if timeframe_start <= s.timestamp <= now]
        trend = analyze_trend(trend_samples, config=self._trend_config)

        return ComputedAnalysis(
            key=key,
            baselines=baselines,
            reference_window=self._reference_window,
            spike=spike,
            trend=trend,
            sample_count=len(series),
            source=self.source.name,
            load_time_ms=load_time_ms,
            compute_time_ms=0.0,
            computed_at=now,
        )

    def _holdout_count(self, key: MetricKey, series: list[Sample]) -> int:
        if not series:
            return 0
        span = key.timeframe.duration * self.settings.analysis.holdout_fraction
        cutoff = series[-1].timestamp - span
        recent = sum(1 for s in series if s.timestamp > cutoff) if span else 0
        return min(recent, len(series) // 2)

    def _fallback(self, key: MetricKey, error: SourceUnavailableError, *, elapsed_ms: float) -> AnalysisResult:
        """Degraded result for a failed source: nothing cached, confidence 0."""
        self._fallbacks += 1
        record_computation(key.timeframe.value, "fallback")

        now = self._clock()
        baselines = compute_baselines([], self._windows, now=now)
        spike = SpikeResult(
            is_spike=False,
            severity=Severity.NONE,
            current_value=0.0,
            baseline_value=0.0,
            deviation_percent=0.0,
            reason=f"{key.metric_name}: source unavailable, analysis degraded ({error.message})",
            window=self._reference_window,
        )
        computed = ComputedAnalysis(
            key=key,
            baselines=baselines,
            reference_window=self._reference_window,
            spike=spike,
            trend=analyze_trend([]),
            sample_count=0,
            source=FALLBACK_SOURCE,
            load_time_ms=elapsed_ms,
            compute_time_ms=0.0,
            computed_at=now,
            degraded=True,
        )
        metadata = AnalysisMetadata(
            source=FALLBACK_SOURCE,
            cache_hit=False,
            load_time_ms=elapsed_ms,
            compute_time_ms=0.0,
            confidence=computed.confidence,
            sample_count=0,
            degraded=True,
        )
        return AnalysisResult.from_computed(computed, metadata)

    def _prefetch_adjacent(self, key: MetricKey) -> None:
        neighbours = [key.with_timeframe(tf) for tf in key.timeframe.adjacent()]
        if neighbours:
            self.cache.warm(neighbours, lambda k: partial(self._compute, k))

    def _record_source_error(self, key: MetricKey, error: SourceUnavailableError) -> None:
        self._source_errors += 1
        record_source_failure(self.source.name, error.error_code)
        record_computation(key.timeframe.value, "failure")


def _coerce_key(key: MetricKey | str) -> MetricKey:
    if isinstance(key, MetricKey):
        return key
    if isinstance(key, str):
        return MetricKey.parse(key)
    raise InvalidKeyError(f"Expected MetricKey or 'asset:metric:timeframe', got {type(key).__name__}")


def _with_compute_time(computed: ComputedAnalysis, compute_ms: float) -> ComputedAnalysis:
    return replace(computed, compute_time_ms=compute_ms)
