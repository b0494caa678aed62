"""
HTTP sample source.

JSON client for a remote metrics API:

    GET {base_url}/v1/samples?asset_id=..&metric_name=..&start=<epoch>&end=<epoch>
    -> {"samples": [{"timestamp": <epoch s | epoch ms | ISO-8601>, "value": <number>}]}

Rate limit responses (429/503) go through RateLimitAwareExecutor; other
transient statuses are retried with jittered exponential backoff. A 404 means
the series is unknown and yields no samples.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from datetime import UTC, datetime
from typing import Any

import aiohttp

from metric_sentinel.config.settings import Settings
from metric_sentinel.domain.errors import SourceRateLimitedError, SourceUnavailableError
from metric_sentinel.domain.models import Sample
from metric_sentinel.observability.logging import get_logger
from metric_sentinel.ports.sample_source import SampleSourcePort
from metric_sentinel.services.rate_limiter import RateLimitAwareExecutor

logger = get_logger(__name__)

# Transient HTTP errors that should trigger retry
TRANSIENT_HTTP_CODES = {429, 500, 502, 503, 504}
RATE_LIMIT_HTTP_CODES = {429, 503}


class HttpSampleSource(SampleSourcePort):
    """aiohttp-backed sample source."""

    name = "http"

    def __init__(
        self,
        settings: Settings,
        *,
        base_url: str | None = None,
        rate_limiter: RateLimitAwareExecutor | None = None,
    ):
        source_settings = settings.source
        self.base_url = (base_url or source_settings.http_base_url).rstrip("/")
        self.api_key = source_settings.http_api_key
        self.timeout = source_settings.request_timeout_seconds
        self._max_retries = source_settings.http_max_retries
        self._retry_base_delay_ms = source_settings.http_retry_base_delay_ms
        self._rate_limiter = rate_limiter or RateLimitAwareExecutor(
            source_name=self.name,
            requests_per_minute=source_settings.http_rate_limit_per_minute,
        )
        self._session: aiohttp.ClientSession | None = None

    async def initialize(self) -> None:
        if self._session is not None and not self._session.closed:
            return
        if not self.base_url:
            raise SourceUnavailableError("HTTP sample source has no base URL configured", source=self.name)

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        self._session = aiohttp.ClientSession(
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch_samples(
        self,
        asset_id: str,
        metric_name: str,
        start: datetime,
        end: datetime,
    ) -> list[Sample]:
        await self.initialize()
        assert self._session is not None
        session = self._session

        url = f"{self.base_url}/v1/samples"
        params = {
            "asset_id": asset_id,
            "metric_name": metric_name,
            "start": str(int(start.timestamp())),
            "end": str(int(end.timestamp())),
        }
        label = f"samples_{asset_id}_{metric_name}"

        async def _request() -> tuple[int, Any]:
            async with session.get(url, params=params) as resp:
                if resp.status in RATE_LIMIT_HTTP_CODES:
                    retry_after: float | None = None
                    header = resp.headers.get("Retry-After")
                    if header:
                        with contextlib.suppress(ValueError):
                            retry_after = float(header)
                    raise SourceRateLimitedError(
                        f"{self.base_url} returned {resp.status}",
                        source=self.name,
                        details={"status": resp.status, "retry_after": retry_after},
                    )
                if resp.status == 200:
                    return resp.status, await resp.json()
                return resp.status, await resp.text()

        attempts = max(1, int(self._max_retries) + 1)
        status: int | None = None
        data: Any = None

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                status, data = await self._rate_limiter.execute(_request, label=label)
            except SourceRateLimitedError:
                if last_attempt:
                    raise
                await self._backoff(attempt, f"rate limited ({label})")
                continue
            except (aiohttp.ClientError, TimeoutError) as e:
                if last_attempt:
                    raise SourceUnavailableError(
                        f"Request to {url} failed after {attempts} attempts: {e!r}",
                        source=self.name,
                        details={"asset_id": asset_id, "metric_name": metric_name},
                    ) from e
                await self._backoff(attempt, f"request failed ({label}): {e!r}")
                continue

            if status == 200:
                break

            if status == 404:
                logger.debug(f"No series {asset_id}:{metric_name} at {self.base_url} (404)")
                return []

            if status in TRANSIENT_HTTP_CODES and not last_attempt:
                await self._backoff(attempt, f"returned {status} ({label})")
                continue

            snippet = str(data)[:200] if data is not None else ""
            raise SourceUnavailableError(
                f"{url} returned {status}: {snippet}",
                source=self.name,
                details={"status": status, "asset_id": asset_id, "metric_name": metric_name},
            )

        return _parse_samples(data)

    async def _backoff(self, attempt: int, reason: str) -> None:
        base = self._retry_base_delay_ms / 1000.0
        backoff = base * (2**attempt)
        delay = backoff + (backoff * random.uniform(0.0, 0.25))
        logger.warning(f"HTTP sample source {reason}. Retrying in {delay:.1f}s")
        await asyncio.sleep(delay)


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, str):
        try:
            raw = float(raw)
        except ValueError:
            ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            return ts if ts.tzinfo else ts.replace(tzinfo=UTC)
    value = float(raw)
    if value > 1e12:  # Milliseconds
        value /= 1000
    return datetime.fromtimestamp(value, tz=UTC)


def _parse_samples(data: Any) -> list[Sample]:
    """Parse the response body; malformed rows are skipped."""
    rows = data.get("samples", []) if isinstance(data, dict) else []
    samples: list[Sample] = []
    skipped = 0
    for row in rows:
        try:
            samples.append(Sample(timestamp=_parse_timestamp(row["timestamp"]), value=float(row["value"])))
        except (KeyError, TypeError, ValueError):
            skipped += 1
    if skipped:
        logger.warning(f"HTTP sample source skipped {skipped} malformed rows")
    return samples
