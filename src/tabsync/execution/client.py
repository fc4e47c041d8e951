"""Authenticated HTTP client with bounded exponential-backoff retry.

Manifesto:
    The remote API enforces rate limits and occasionally goes away. A
    request that hits 429, 503 or a transport failure is retried a bounded
    number of times with cooperative sleeps; everything else fails at
    once so a broken request never burns the invocation's budget.

ARCHITECTURE
────────────
::

    request(endpoint, method, payload)
        │
        ▼
    RetryContext(ExponentialBackoff(max_retries=3, base_delay=2.0))
        │   attempt 1 ──► 429 ──► RETRY log, await sleep(2)
        │   attempt 2 ──► 503 ──► RETRY log, await sleep(4)
        │   attempt 3 ──► ConnectError ──► RETRY log, await sleep(8)
        │   attempt 4 ──► 429 ──► RetryExhaustedError(last_error=RateLimitError)
        │   (stops early when the next wait would overrun time_left;
        │    a Retry-After header raises the wait to at least its value)
        ▼
    parsed JSON body

    404 / 400 / 500 ... ──► RequestError(status, body)   (no retry)

Related modules:
    retry.py       — backoff strategy and retry loop
    batch_loop.py  — the only caller during a sync

Tags:
    http, httpx, retry, backoff, rate-limit, tabsync
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from tabsync.core.errors import (
    InvalidConfigError,
    NetworkError,
    ParseError,
    RateLimitError,
    RequestError,
    RetryExhaustedError,
    ServiceUnavailableError,
    TransientError,
    is_retryable,
)
from tabsync.core.logging import get_logger
from tabsync.execution.retry import ExponentialBackoff, RetryContext, Sleep
from tabsync.execution.transform import dig

if TYPE_CHECKING:
    from tabsync.core.settings import TabsyncSettings
    from tabsync.store.oplog import OperationalLog

logger = get_logger(__name__)

RETRYABLE_STATUSES = {429: RateLimitError, 503: ServiceUnavailableError}


@dataclass
class Page:
    """One fetched page of records."""

    page: int
    records: list[dict[str, Any]] = field(default_factory=list)
    total_count: int | None = None


class ApiClient:
    """Bearer-token client for the remote data API.

    Use as an async context manager so the underlying connection pool is
    closed at the end of the invocation.

    Args:
        base_url: Base endpoint; request endpoints are appended to it.
        token: Bearer token; omitted from headers when blank.
        timeout: Per-request timeout in seconds.
        strategy: Backoff strategy (default: 3 retries from 2 s).
        sleep: Awaitable sleep used between retries.
        transport: Optional httpx transport (tests use ``MockTransport``).
        oplog: Operational log receiving RETRY entries.
        time_left: Seconds left in the invocation budget; retries stop
            once the next wait would cross it.
        records_field: Dotted path of the record list in a page body.
        total_field: Dotted path of the total record count in a page body.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = 30.0,
        strategy: ExponentialBackoff | None = None,
        sleep: Sleep = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
        oplog: OperationalLog | None = None,
        time_left: Callable[[], float] | None = None,
        records_field: str = "data",
        total_field: str = "meta.total_count",
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.strategy = strategy or ExponentialBackoff(max_retries=3, base_delay=2.0)
        self.strategy.retry_on = is_retryable
        self.sleep = sleep
        self.oplog = oplog
        self.time_left = time_left
        self.records_field = records_field
        self.total_field = total_field
        self.scope_id = ""

    @classmethod
    def from_settings(cls, settings: TabsyncSettings, **kwargs: Any) -> ApiClient:
        """Build a client from configuration.

        Raises:
            InvalidConfigError: ``base_url`` is not an absolute http(s) URL.
        """
        try:
            url = httpx.URL(settings.base_url)
        except httpx.InvalidURL:
            url = httpx.URL()
        if url.scheme not in ("http", "https") or not url.host:
            raise InvalidConfigError(
                "base_url",
                settings.base_url,
                f"base_url must be an absolute http(s) URL, got {settings.base_url!r}",
            )
        return cls(
            settings.base_url,
            settings.auth_token,
            timeout=settings.request_timeout_seconds,
            strategy=ExponentialBackoff(
                max_retries=settings.max_retries,
                base_delay=settings.backoff_base_seconds,
            ),
            records_field=settings.records_field,
            total_field=settings.total_field,
            **kwargs,
        )

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- requests ------------------------------------------------------------

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request with retry and return the parsed JSON body.

        ``payload`` becomes query parameters for GET and a JSON body
        otherwise.

        Raises:
            RequestError: non-retryable non-2xx status.
            RetryExhaustedError: retryable failures outlasted the strategy.
            ParseError: the 2xx body is not JSON.
        """
        ctx = RetryContext(
            strategy=self.strategy,
            on_retry=lambda attempt, error, delay: self._log_retry(endpoint, attempt, error, delay),
            sleep=self.sleep,
            time_left=self.time_left,
        )
        try:
            return await ctx.run_async(self._send, endpoint, method.upper(), payload)
        except TransientError as exc:
            logger.error(
                "request_failed",
                endpoint=endpoint,
                attempts=ctx.attempts,
                out_of_time=ctx.out_of_time,
                error=exc.message,
            )
            stopped = " (invocation budget spent)" if ctx.out_of_time else ""
            raise RetryExhaustedError(
                f"{method.upper()} {endpoint} failed after {ctx.attempts} attempts{stopped}: "
                f"{exc.message}",
                attempts=ctx.attempts,
                last_error=exc,
            ).with_context(url=endpoint, http_status=exc.context.http_status) from exc
        except RequestError as exc:
            logger.error("request_failed", endpoint=endpoint, status=exc.status, body=exc.body[:200])
            raise

    async def _send(self, endpoint: str, method: str, payload: dict[str, Any] | None) -> Any:
        try:
            if method == "GET":
                response = await self._http.request(method, endpoint, params=payload)
            else:
                response = await self._http.request(method, endpoint, json=payload)
        except httpx.TransportError as exc:
            raise NetworkError(
                f"{type(exc).__name__}: {exc}", cause=exc
            ).with_context(url=endpoint) from exc

        if response.status_code in RETRYABLE_STATUSES:
            error_cls = RETRYABLE_STATUSES[response.status_code]
            raise error_cls(
                f"HTTP {response.status_code} from {endpoint}",
                retry_after=_retry_after(response),
            ).with_context(url=endpoint, http_status=response.status_code)

        if not response.is_success:
            raise RequestError(
                f"HTTP {response.status_code} from {endpoint}",
                status=response.status_code,
                body=response.text,
            ).with_context(url=endpoint)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"Invalid JSON from {endpoint}", cause=exc).with_context(
                url=endpoint, http_status=response.status_code
            ) from exc

    def _log_retry(self, endpoint: str, attempt: int, error: Exception, delay: float) -> None:
        logger.warning(
            "request_retry",
            endpoint=endpoint,
            attempt=attempt,
            delay=delay,
            error=str(error),
        )
        if self.oplog is not None:
            self.oplog.retry(
                self.scope_id,
                f"{endpoint} attempt {attempt} failed ({error}); retrying in {delay:g}s",
            )

    # -- page helpers --------------------------------------------------------

    async def fetch_page(
        self,
        endpoint: str,
        params: dict[str, Any],
        page: int,
        page_size: int,
    ) -> Page:
        """Fetch 0-indexed *page*. The API itself numbers pages from 1."""
        body = await self.request(
            endpoint,
            "GET",
            {**params, "page": page + 1, "per_page": page_size},
        )
        records = dig(body, self.records_field)
        if records is None:
            records = []
        if not isinstance(records, list):
            raise ParseError(
                f"Expected a list at '{self.records_field}' in page {page} of {endpoint}"
            ).with_context(url=endpoint, page=page)

        total = dig(body, self.total_field)
        total_count: int | None = None
        if total not in (None, ""):
            try:
                total_count = int(total)
            except (TypeError, ValueError) as exc:
                raise ParseError(
                    f"Total count {total!r} at '{self.total_field}' is not an integer"
                ).with_context(url=endpoint, page=page) from exc

        return Page(page=page, records=records, total_count=total_count)

    async def fetch_supplements(
        self,
        endpoint: str,
        id_param: str,
        key_field: str,
        ids: list[str],
        params: dict[str, Any] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Fetch supplementary records for *ids* in one request, keyed by id."""
        if not ids:
            return {}
        body = await self.request(
            endpoint,
            "GET",
            {**(params or {}), id_param: ",".join(ids)},
        )
        items = dig(body, self.records_field)
        if not isinstance(items, list):
            raise ParseError(f"Expected a list at '{self.records_field}' from {endpoint}")
        return {
            str(item[key_field]): item
            for item in items
            if isinstance(item, dict) and item.get(key_field) is not None
        }


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
