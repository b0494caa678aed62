"""
Unit tests for the HTTP sample source against a local aiohttp server.
"""

import contextlib
from datetime import UTC, datetime, timedelta

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from metric_sentinel.adapters.sources.http import HttpSampleSource, _parse_samples, _parse_timestamp
from metric_sentinel.domain.errors import SourceRateLimitedError, SourceUnavailableError
from metric_sentinel.services.rate_limiter import RateLimitAwareExecutor

START = datetime(2024, 5, 1, tzinfo=UTC)
END = START + timedelta(days=7)

OK_BODY = {
    "samples": [
        {"timestamp": START.timestamp(), "value": 1.5},
        {"timestamp": int((START + timedelta(days=1)).timestamp() * 1000), "value": 2},
        {"timestamp": "2024-05-03T00:00:00Z", "value": "3.25"},
    ]
}


class FakeApi:
    """Serves queued (status, body, headers) responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[web.Request] = []

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        status, body, headers = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(body, dict):
            return web.json_response(body, status=status, headers=headers)
        return web.Response(status=status, text=body or "", headers=headers)


@contextlib.asynccontextmanager
async def serve(api: FakeApi):
    app = web.Application()
    app.router.add_get("/v1/samples", api.handle)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url(""))
    finally:
        await server.close()


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def http_settings(settings):
    settings.source.http_retry_base_delay_ms = 0
    settings.source.http_max_retries = 2
    settings.source.http_api_key = "secret-key"
    return settings


def _source(settings, base_url: str) -> HttpSampleSource:
    limiter = RateLimitAwareExecutor("http", sleep=_no_sleep)
    return HttpSampleSource(settings, base_url=base_url, rate_limiter=limiter)


class TestFetch:
    @pytest.mark.asyncio
    async def test_parses_samples_and_sends_query(self, http_settings) -> None:
        api = FakeApi((200, OK_BODY, None))
        async with serve(api) as url:
            source = _source(http_settings, url)
            try:
                samples = await source.fetch_samples("btc", "tvl", START, END)
            finally:
                await source.close()

        assert [s.value for s in samples] == [1.5, 2.0, 3.25]
        assert samples[1].timestamp == START + timedelta(days=1)
        assert samples[2].timestamp == datetime(2024, 5, 3, tzinfo=UTC)

        query = api.requests[0].query
        assert query["asset_id"] == "btc"
        assert query["metric_name"] == "tvl"
        assert query["start"] == str(int(START.timestamp()))
        assert api.requests[0].headers["Authorization"] == "Bearer secret-key"

    @pytest.mark.asyncio
    async def test_unknown_series_is_empty(self, http_settings) -> None:
        api = FakeApi((404, "not found", None))
        async with serve(api) as url:
            source = _source(http_settings, url)
            try:
                assert await source.fetch_samples("btc", "tvl", START, END) == []
            finally:
                await source.close()

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, http_settings) -> None:
        api = FakeApi((502, "bad gateway", None), (500, "oops", None), (200, OK_BODY, None))
        async with serve(api) as url:
            source = _source(http_settings, url)
            try:
                samples = await source.fetch_samples("btc", "tvl", START, END)
            finally:
                await source.close()

        assert len(samples) == 3
        assert len(api.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, http_settings) -> None:
        api = FakeApi((500, "oops", None))
        async with serve(api) as url:
            source = _source(http_settings, url)
            try:
                with pytest.raises(SourceUnavailableError) as exc_info:
                    await source.fetch_samples("btc", "tvl", START, END)
            finally:
                await source.close()

        assert exc_info.value.details["status"] == 500
        assert len(api.requests) == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, http_settings) -> None:
        api = FakeApi((400, "bad request", None))
        async with serve(api) as url:
            source = _source(http_settings, url)
            try:
                with pytest.raises(SourceUnavailableError):
                    await source.fetch_samples("btc", "tvl", START, END)
            finally:
                await source.close()

        assert len(api.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, http_settings) -> None:
        api = FakeApi((429, "slow down", {"Retry-After": "0"}), (200, OK_BODY, None))
        async with serve(api) as url:
            source = _source(http_settings, url)
            try:
                samples = await source.fetch_samples("btc", "tvl", START, END)
            finally:
                await source.close()

        assert len(samples) == 3
        assert len(api.requests) == 2

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_raises(self, http_settings) -> None:
        http_settings.source.http_max_retries = 0
        api = FakeApi((503, "busy", {"Retry-After": "0"}))
        async with serve(api) as url:
            source = _source(http_settings, url)
            try:
                with pytest.raises(SourceRateLimitedError) as exc_info:
                    await source.fetch_samples("btc", "tvl", START, END)
            finally:
                await source.close()

        assert exc_info.value.details["retry_after"] == 0.0
        # One request plus the executor's single retry
        assert len(api.requests) == 2

    @pytest.mark.asyncio
    async def test_unreachable_server(self, http_settings) -> None:
        http_settings.source.http_max_retries = 0
        source = _source(http_settings, "http://127.0.0.1:9")
        try:
            with pytest.raises(SourceUnavailableError):
                await source.fetch_samples("btc", "tvl", START, END)
        finally:
            await source.close()

    @pytest.mark.asyncio
    async def test_missing_base_url(self, settings) -> None:
        source = HttpSampleSource(settings)
        with pytest.raises(SourceUnavailableError):
            await source.initialize()


class TestParsing:
    @pytest.mark.parametrize(
        "raw",
        [1714521600, 1714521600000, "1714521600", "2024-05-01T00:00:00Z", "2024-05-01T00:00:00"],
    )
    def test_timestamp_formats(self, raw) -> None:
        assert _parse_timestamp(raw) == START

    def test_malformed_rows_are_skipped(self) -> None:
        body = {"samples": [{"timestamp": 1714521600, "value": 1}, {"value": 2}, {"timestamp": "x", "value": 3}]}
        assert len(_parse_samples(body)) == 1

    def test_unexpected_body_shape(self) -> None:
        assert _parse_samples(["not", "a", "dict"]) == []
