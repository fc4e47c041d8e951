"""Tests for the HTTP client with retry."""

import json

import httpx
import pytest

from tabsync.core.errors import (
    InvalidConfigError,
    NetworkError,
    ParseError,
    RateLimitError,
    RequestError,
    RetryExhaustedError,
    ServiceUnavailableError,
)
from tabsync.execution.client import ApiClient
from tabsync.store.oplog import OperationalLog, read_log

BASE_URL = "https://api.test"


class Script:
    """Mock handler answering with a scripted series of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _client(handler, sleep, **kwargs) -> ApiClient:
    return ApiClient(
        BASE_URL,
        "secret-token",
        sleep=sleep,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestRetry:
    """Retryable failures back off, everything else fails at once."""

    @pytest.mark.asyncio
    async def test_constant_429_exhausts_after_four_attempts(self, sleep):
        script = Script(httpx.Response(429, text="slow down"))
        async with _client(script, sleep) as client:
            with pytest.raises(RetryExhaustedError) as excinfo:
                await client.request("/matches")

        assert len(script.requests) == 4
        assert sleep.delays == [2.0, 4.0, 8.0]
        assert excinfo.value.attempts == 4
        assert isinstance(excinfo.value.last_error, RateLimitError)

    @pytest.mark.asyncio
    async def test_recovers_after_429_then_503(self, sleep):
        script = Script(
            httpx.Response(429),
            httpx.Response(503),
            httpx.Response(200, json={"ok": True}),
        )
        async with _client(script, sleep) as client:
            body = await client.request("/matches")

        assert body == {"ok": True}
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhaustion_keeps_last_error(self, sleep):
        script = Script(
            httpx.Response(429),
            httpx.Response(429),
            httpx.Response(429),
            httpx.Response(503),
        )
        async with _client(script, sleep) as client:
            with pytest.raises(RetryExhaustedError) as excinfo:
                await client.request("/matches")
        assert isinstance(excinfo.value.last_error, ServiceUnavailableError)

    @pytest.mark.asyncio
    async def test_404_is_not_retried(self, sleep):
        script = Script(httpx.Response(404, text="no such season"))
        async with _client(script, sleep) as client:
            with pytest.raises(RequestError) as excinfo:
                await client.request("/matches")

        assert len(script.requests) == 1
        assert sleep.delays == []
        assert excinfo.value.status == 404
        assert excinfo.value.body == "no such season"

    @pytest.mark.asyncio
    async def test_transport_failure_is_retried(self, sleep):
        script = Script(
            httpx.ConnectError("refused"),
            httpx.Response(200, json={"ok": True}),
        )
        async with _client(script, sleep) as client:
            assert await client.request("/matches") == {"ok": True}
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_transport_failure_exhausts_as_network_error(self, sleep):
        script = Script(httpx.ReadTimeout("slow"))
        async with _client(script, sleep) as client:
            with pytest.raises(RetryExhaustedError) as excinfo:
                await client.request("/matches")
        assert isinstance(excinfo.value.last_error, NetworkError)

    @pytest.mark.asyncio
    async def test_each_retry_is_logged(self, sleep, workbook, ctx):
        script = Script(httpx.Response(429), httpx.Response(200, json={}))
        async with _client(script, sleep, oplog=OperationalLog(workbook, ctx)) as client:
            client.scope_id = "season-2024"
            await client.request("/matches")

        entries = read_log(workbook)
        assert [e["status"] for e in entries] == ["RETRY"]
        assert entries[0]["scope"] == "season-2024"
        assert "attempt 1" in entries[0]["message"]

    @pytest.mark.asyncio
    async def test_stops_when_next_wait_overruns_time_left(self, sleep, clock):
        deadline = clock() + 5
        script = Script(httpx.Response(429))
        async with _client(script, sleep, time_left=lambda: deadline - clock()) as client:
            with pytest.raises(RetryExhaustedError) as excinfo:
                await client.request("/matches")

        assert len(script.requests) == 2
        assert sleep.delays == [2.0]
        assert excinfo.value.attempts == 2
        assert "invocation budget spent" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_retry_after_is_a_lower_bound(self, sleep):
        script = Script(
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(503, headers={"Retry-After": "1"}),
            httpx.Response(200, json={"ok": True}),
        )
        async with _client(script, sleep) as client:
            assert await client.request("/matches") == {"ok": True}
        assert sleep.delays == [7.0, 4.0]


class TestRequest:
    """Request shape and body handling."""

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self, sleep):
        script = Script(httpx.Response(200, json={}))
        async with _client(script, sleep) as client:
            await client.request("/matches")
        assert script.requests[0].headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_blank_token_omits_header(self, sleep):
        script = Script(httpx.Response(200, json={}))
        client = ApiClient(BASE_URL, "", sleep=sleep, transport=httpx.MockTransport(script))
        async with client:
            await client.request("/matches")
        assert "Authorization" not in script.requests[0].headers

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self, sleep):
        script = Script(httpx.Response(200, json={}))
        async with _client(script, sleep) as client:
            await client.request("/search", "post", {"q": "x"})
        assert script.requests[0].method == "POST"
        assert json.loads(script.requests[0].content) == {"q": "x"}

    @pytest.mark.asyncio
    async def test_empty_body_is_none(self, sleep):
        script = Script(httpx.Response(204))
        async with _client(script, sleep) as client:
            assert await client.request("/ping") is None

    @pytest.mark.asyncio
    async def test_invalid_json_raises_parse_error(self, sleep):
        script = Script(httpx.Response(200, text="<html>"))
        async with _client(script, sleep) as client:
            with pytest.raises(ParseError):
                await client.request("/matches")


class TestFetchPage:
    """Page requests are 1-based on the wire."""

    @pytest.mark.asyncio
    async def test_page_params_and_total(self, sleep, fake_api):
        client = ApiClient(BASE_URL, "t", sleep=sleep, transport=fake_api.transport)
        async with client:
            page = await client.fetch_page("/matches", {"season": 2024}, 2, 100)

        request = fake_api.requests[0]
        assert request.url.params["page"] == "3"
        assert request.url.params["per_page"] == "100"
        assert request.url.params["season"] == "2024"
        assert page.page == 2
        assert page.total_count == 250
        assert [r["id"] for r in page.records] == list(range(201, 251))

    @pytest.mark.asyncio
    async def test_missing_total_is_none(self, sleep, fake_api):
        fake_api.omit_total = True
        client = ApiClient(BASE_URL, "t", sleep=sleep, transport=fake_api.transport)
        async with client:
            page = await client.fetch_page("/matches", {}, 0, 100)
        assert page.total_count is None
        assert len(page.records) == 100

    @pytest.mark.asyncio
    async def test_records_must_be_a_list(self, sleep):
        script = Script(httpx.Response(200, json={"data": {"id": 1}}))
        async with _client(script, sleep) as client:
            with pytest.raises(ParseError):
                await client.fetch_page("/matches", {}, 0, 10)

    @pytest.mark.asyncio
    async def test_non_integer_total(self, sleep):
        script = Script(httpx.Response(200, json={"data": [], "meta": {"total_count": "lots"}}))
        async with _client(script, sleep) as client:
            with pytest.raises(ParseError):
                await client.fetch_page("/matches", {}, 0, 10)


class TestFetchSupplements:
    """One batched request per page."""

    @pytest.mark.asyncio
    async def test_keyed_by_id(self, sleep, fake_api):
        client = ApiClient(BASE_URL, "t", sleep=sleep, transport=fake_api.transport)
        async with client:
            stats = await client.fetch_supplements("/match-stats", "match_ids", "match_id", ["3", "4"])

        assert len(fake_api.requests) == 1
        assert fake_api.requests[0].url.params["match_ids"] == "3,4"
        assert stats == {
            "3": {"match_id": 3, "possession": 53},
            "4": {"match_id": 4, "possession": 54},
        }

    @pytest.mark.asyncio
    async def test_no_ids_no_request(self, sleep, fake_api):
        client = ApiClient(BASE_URL, "t", sleep=sleep, transport=fake_api.transport)
        async with client:
            assert await client.fetch_supplements("/match-stats", "match_ids", "match_id", []) == {}
        assert fake_api.requests == []


class TestFromSettings:
    """Client construction from configuration."""

    @pytest.mark.asyncio
    async def test_uses_configured_retry_policy(self, settings, sleep):
        async with ApiClient.from_settings(settings, sleep=sleep) as client:
            assert client.strategy.max_retries == 3
            assert client.strategy.base_delay == 2.0

    @pytest.mark.parametrize("url", ["", "api.test/v1", "ftp://api.test"])
    def test_rejects_unusable_base_url(self, settings, url):
        with pytest.raises(InvalidConfigError) as excinfo:
            ApiClient.from_settings(settings.model_copy(update={"base_url": url}))
        assert excinfo.value.key == "base_url"
        assert excinfo.value.value == url
