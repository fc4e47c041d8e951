"""Tests for the cadence service and the thread backend."""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from tabsync.core.scheduling.cadence import TICK_ORDER, CadenceService
from tabsync.core.scheduling.policy import SyncOperation
from tabsync.core.scheduling.protocol import SchedulerBackend
from tabsync.core.scheduling.thread_backend import ThreadSchedulerBackend


class FakeNow:
    def __init__(self) -> None:
        self.value = datetime(2026, 2, 15, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value += timedelta(**kwargs)


class FakeBackend:
    """Backend that records lifecycle calls and never ticks on its own."""

    name = "fake"

    def __init__(self) -> None:
        self.started_with = None
        self.stopped = False

    def start(self, tick_callback, interval_seconds=60.0):
        self.started_with = (tick_callback, interval_seconds)

    def stop(self):
        self.stopped = True

    def health(self):
        return {"healthy": self.started_with is not None, "backend": self.name, "tick_count": 0, "last_tick": None}


@pytest.fixture
def now():
    return FakeNow()


@pytest.fixture
def service(make_dispatcher, now):
    return CadenceService(make_dispatcher(now=now), FakeBackend(), now=now)


class TestDue:
    """Which operations a tick runs."""

    def test_everything_due_initially(self, service):
        assert service.due() == TICK_ORDER

    @pytest.mark.asyncio
    async def test_only_elapsed_cadences_due(self, service, now):
        await service.tick()

        now.advance(minutes=15)
        assert service.due() == [SyncOperation.CONTINUE]

        now.advance(minutes=20)
        assert service.due() == [SyncOperation.CONTINUE, SyncOperation.DISCOVER]

        now.advance(hours=2)
        assert service.due() == [SyncOperation.CONTINUE, SyncOperation.DISCOVER, SyncOperation.REFRESH]

    def test_custom_cadences(self, make_dispatcher, now):
        service = CadenceService(
            make_dispatcher(), FakeBackend(), cadences={SyncOperation.CONTINUE: timedelta(minutes=1)}, now=now
        )
        assert service.due() == [SyncOperation.CONTINUE]


class TestTick:
    """Each due operation is a separate scheduled invocation."""

    @pytest.mark.asyncio
    async def test_tick_runs_due_operations_in_order(self, service):
        reports = await service.tick()

        assert [r.operation for r in reports] == [op.value for op in TICK_ORDER]
        assert all(r.trigger == "scheduled" for r in reports)
        assert service.stats.operations_run == 5

    @pytest.mark.asyncio
    async def test_last_runs_persist_in_workbook(self, service, make_dispatcher, now):
        await service.tick()

        restarted = CadenceService(make_dispatcher(), FakeBackend(), now=now)

        assert restarted.last_run(SyncOperation.RECONCILE) == now.value
        assert restarted.due() == []

    @pytest.mark.asyncio
    async def test_second_tick_runs_nothing(self, service):
        await service.tick()
        assert await service.tick() == []
        assert service.stats.tick_count == 2

    @pytest.mark.asyncio
    async def test_failed_operation_does_not_stop_tick(self, service):
        original = service.dispatcher.run

        async def flaky_run(operation, trigger):
            if operation == SyncOperation.DISCOVER:
                raise RuntimeError("boom")
            return await original(operation, trigger)

        service.dispatcher.run = flaky_run

        reports = await service.tick()

        assert len(reports) == 4
        assert service.stats.operations_failed == 1
        assert service.stats.last_error == "boom"
        # The stamp is written before dispatch, so a failing operation waits its cadence
        assert SyncOperation.DISCOVER not in service.due()


class TestLifecycle:
    def test_start_and_stop_delegate_to_backend(self, service):
        service.start(interval_seconds=30)
        assert service.backend.started_with == (service.tick, 30)
        service.stop()
        assert service.backend.stopped

    def test_health(self, service):
        health = service.health()
        assert health["backend"]["backend"] == "fake"
        assert health["tick_count"] == 0
        assert health["active_locks"] == 0

    def test_fake_backend_satisfies_protocol(self):
        assert isinstance(FakeBackend(), SchedulerBackend)
        assert isinstance(ThreadSchedulerBackend(), SchedulerBackend)


class TestThreadSchedulerBackend:
    """Daemon-thread ticker."""

    def test_ticks_immediately_and_stops(self):
        ticked = threading.Event()

        async def tick():
            ticked.set()

        backend = ThreadSchedulerBackend(run_immediately=True)
        backend.start(tick, interval_seconds=3600)
        try:
            assert ticked.wait(timeout=5)
            assert backend.is_running
            assert backend.tick_count == 1
        finally:
            backend.stop()

        assert not backend.is_running
        health = backend.health()
        assert health["backend"] == "thread"
        assert health["interval_seconds"] == 3600

    def test_failing_tick_keeps_thread_alive(self):
        calls = threading.Semaphore(0)

        async def tick():
            calls.release()
            raise RuntimeError("tick failed")

        backend = ThreadSchedulerBackend()
        backend.start(tick, interval_seconds=0.01)
        try:
            assert calls.acquire(timeout=5)
            assert calls.acquire(timeout=5)
        finally:
            backend.stop()

    def test_stop_before_start_is_noop(self):
        ThreadSchedulerBackend().stop()
