"""
Shared pytest fixtures for tabsync tests.

This module provides:
- A controllable monotonic clock and recording sleep
- A fake remote API served through ``httpx.MockTransport``
- Workbooks (in-memory and SQLite), settings and a scope registry
- A dispatcher factory wired to all of the above

Usage:
    async def test_something(make_dispatcher, fake_api):
        dispatcher = make_dispatcher()
        report = await dispatcher.run("continue")
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from tabsync.core.context import InvocationContext, Trigger
from tabsync.core.scheduling.dispatcher import SyncDispatcher
from tabsync.core.scheduling.lock_manager import LockManager
from tabsync.core.scheduling.registry import ScopeRegistry
from tabsync.core.settings import TabsyncSettings
from tabsync.core.sqlite_conn import SqliteConnection
from tabsync.store.workbook import MemoryWorkbook

BASE_URL = "https://api.test"


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingSleep:
    """Async sleep that records delays, advances a fake clock and yields."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


# =============================================================================
# Remote API
# =============================================================================


def make_record(i: int) -> dict[str, Any]:
    return {
        "id": i,
        "date": "2024-03-01",
        "home": {"name": f"Home {i}"},
        "away": {"name": f"Away {i}"},
        "score": {"home": i % 4, "away": 1},
    }


class FakeApi:
    """Paginated match API with injectable failures.

    ``GET /matches?page=<1-based>&per_page=N`` returns ``{"data": [...],
    "meta": {"total_count": total}}``; ``GET /match-stats?match_ids=a,b``
    returns supplementary stats keyed by ``match_id``.
    """

    def __init__(self, total: int = 250) -> None:
        self.total = total
        self.requests: list[httpx.Request] = []
        self.page_failures: dict[int, list[int]] = {}
        self.supplement_status = 200
        self.omit_total = False
        self.clock: FakeClock | None = None
        self.latency = 0.0

    def fail_page(self, page: int, *statuses: int) -> None:
        """Answer the next requests for 0-indexed *page* with *statuses*."""
        self.page_failures.setdefault(page, []).extend(statuses)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def page_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/matches"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        await asyncio.sleep(0)
        if self.clock is not None:
            self.clock.advance(self.latency)

        if request.url.path == "/match-stats":
            if self.supplement_status != 200:
                return httpx.Response(self.supplement_status, text="stats down")
            ids = request.url.params["match_ids"].split(",")
            return httpx.Response(
                200,
                json={"data": [{"match_id": int(i), "possession": 50 + int(i) % 10} for i in ids]},
            )

        page = int(request.url.params["page"]) - 1
        per_page = int(request.url.params["per_page"])
        pending = self.page_failures.get(page)
        if pending:
            return httpx.Response(pending.pop(0), text="upstream error")

        start = page * per_page
        data = [make_record(i + 1) for i in range(start, min(start + per_page, self.total))]
        body: dict[str, Any] = {"data": data, "meta": {}}
        if not self.omit_total:
            body["meta"]["total_count"] = self.total
        return httpx.Response(200, json=body)


# =============================================================================
# Fixtures
# =============================================================================


REGISTRY = {
    "row_types": {
        "match": {
            "id_field": "id",
            "columns": ["id", "date", "home.name", "away.name", "score.home"],
        },
        "match_stats": {
            "id_field": "id",
            "columns": ["id", "home.name"],
            "supplementary": {
                "endpoint": "/match-stats",
                "id_param": "match_ids",
                "key": "match_id",
                "columns": ["possession"],
            },
        },
    },
    "scopes": [
        {
            "id": "season-2023",
            "kind": "historical",
            "finalized": True,
            "endpoint": "/matches",
            "params": {"season": 2023},
            "row_type": "match",
        },
        {
            "id": "season-2024",
            "kind": "current",
            "endpoint": "/matches",
            "params": {"season": 2024},
            "row_type": "match",
        },
        {
            "id": "season-2024-stats",
            "kind": "current",
            "endpoint": "/matches",
            "params": {"season": 2024},
            "row_type": "match_stats",
            "sheet": "Stats 2024",
        },
    ],
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def workbook() -> MemoryWorkbook:
    return MemoryWorkbook()


@pytest.fixture
def ctx(clock) -> InvocationContext:
    return InvocationContext(trigger=Trigger.SCHEDULED, operation="continue", clock=clock)


@pytest.fixture
def settings() -> TabsyncSettings:
    return TabsyncSettings(
        base_url=BASE_URL,
        auth_token="secret-token",
        page_size=100,
        throttle_ms=1000,
        batch_size=2000,
        scheduled_lock_wait_ms=0,
        interactive_lock_wait_ms=300,
        _env_file=None,
    )


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def registry() -> ScopeRegistry:
    return ScopeRegistry.from_dict(REGISTRY)


@pytest.fixture
def db_conn():
    conn = SqliteConnection(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def locks(db_conn, sleep) -> LockManager:
    return LockManager(db_conn, ttl_seconds=360, sleep=sleep)


@pytest.fixture
def make_dispatcher(registry, workbook, locks, settings, fake_api, sleep, clock):
    """Factory for dispatchers sharing one workbook, lock table and API."""

    def _make(**overrides: Any) -> SyncDispatcher:
        options: dict[str, Any] = {
            "registry": registry,
            "workbook": workbook,
            "locks": locks,
            "settings": settings,
            "transport": fake_api.transport,
            "sleep": sleep,
            "clock": clock,
        }
        options.update(overrides)
        return SyncDispatcher(
            options.pop("registry"),
            options.pop("workbook"),
            options.pop("locks"),
            options.pop("settings"),
            **options,
        )

    return _make
