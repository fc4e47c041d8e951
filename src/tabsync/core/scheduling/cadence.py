"""Cadence service - fires due operations on the reference cadences.

Manifesto:
    Hosts with their own trigger system call ``tabsync run <operation>``
    on the cadences below. ``tabsync serve`` is the self-hosted
    equivalent: a beat-as-poller loop that, on every tick, runs each
    operation whose cadence has elapsed as a separate scheduled
    invocation. Last-run times live in the ``Settings`` sheet so a
    restart does not re-run the weekly reconciliation.

    ========== ==========
    operation  cadence
    ========== ==========
    continue   10 minutes
    discover   30 minutes
    refresh    2 hours
    snapshot   daily
    reconcile  weekly
    ========== ==========

Tags:
    cadence, scheduling, beat-as-poller, tabsync
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from tabsync.core.context import InvocationContext, Trigger
from tabsync.core.logging import get_logger
from tabsync.core.scheduling.dispatcher import DispatchReport, SyncDispatcher
from tabsync.core.scheduling.policy import CADENCES, SyncOperation
from tabsync.core.scheduling.protocol import SchedulerBackend
from tabsync.core.scheduling.thread_backend import ThreadSchedulerBackend
from tabsync.core.timestamps import from_iso8601, to_iso8601, utc_now
from tabsync.store.checkpoints import CheckpointStore

logger = get_logger(__name__)

# Settings-sheet namespace for last-run stamps; not a valid scope id
CADENCE_NAMESPACE = "@cadence"

# Cheap operations first so a slow reconcile never delays continuation
TICK_ORDER = [
    SyncOperation.CONTINUE,
    SyncOperation.DISCOVER,
    SyncOperation.REFRESH,
    SyncOperation.SNAPSHOT,
    SyncOperation.RECONCILE,
]


@dataclass
class CadenceStats:
    """Statistics for the cadence service."""

    tick_count: int = 0
    operations_run: int = 0
    operations_failed: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None
    last_runs: dict[str, str] = field(default_factory=dict)


class CadenceService:
    """Runs due operations through the dispatcher on each tick.

    Args:
        dispatcher: Dispatcher executing the operations.
        backend: Timing backend (default: :class:`ThreadSchedulerBackend`).
        cadences: Operation → interval; defaults to the reference table.
        now: Wall clock.
    """

    def __init__(
        self,
        dispatcher: SyncDispatcher,
        backend: SchedulerBackend | None = None,
        *,
        cadences: dict[SyncOperation, timedelta] | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.dispatcher = dispatcher
        self.backend = backend or ThreadSchedulerBackend()
        self.cadences = dict(cadences or CADENCES)
        self.now = now
        self.stats = CadenceStats()

    def _store(self) -> CheckpointStore:
        ctx = InvocationContext(trigger=Trigger.SCHEDULED, operation="cadence")
        return CheckpointStore(self.dispatcher.workbook, ctx)

    def last_run(self, operation: SyncOperation, store: CheckpointStore | None = None) -> datetime | None:
        store = store or self._store()
        return from_iso8601(store.get(CADENCE_NAMESPACE, f"{operation.value}_last_run"))

    def due(self, now: datetime | None = None) -> list[SyncOperation]:
        """Operations whose cadence has elapsed, in tick order."""
        now = now or self.now()
        store = self._store()
        due = []
        for operation in TICK_ORDER:
            interval = self.cadences.get(operation)
            if interval is None:
                continue
            last = self.last_run(operation, store)
            if last is None or now - last >= interval:
                due.append(operation)
        return due

    async def tick(self) -> list[DispatchReport]:
        """Run every due operation as its own scheduled invocation."""
        now = self.now()
        self.stats.tick_count += 1
        self.stats.last_tick = now

        reports = []
        store = self._store()
        for operation in self.due(now):
            stamp = to_iso8601(now)
            store.set(CADENCE_NAMESPACE, f"{operation.value}_last_run", stamp)
            self.stats.last_runs[operation.value] = stamp
            try:
                reports.append(await self.dispatcher.run(operation, Trigger.SCHEDULED))
                self.stats.operations_run += 1
            except Exception as e:
                self.stats.operations_failed += 1
                self.stats.last_error = str(e)
                logger.error("cadence_operation_failed", operation=operation.value, error=str(e))
        logger.debug("cadence_tick", ran=[r.operation for r in reports])
        return reports

    # === Lifecycle ===

    def start(self, interval_seconds: float = 60.0) -> None:
        logger.info("cadence_start", backend=self.backend.name, interval=interval_seconds)
        self.backend.start(self.tick, interval_seconds)

    def stop(self) -> None:
        self.backend.stop()
        logger.info("cadence_stop", ticks=self.stats.tick_count)

    def health(self) -> dict[str, Any]:
        return {
            "backend": self.backend.health(),
            "tick_count": self.stats.tick_count,
            "operations_run": self.stats.operations_run,
            "operations_failed": self.stats.operations_failed,
            "last_tick": to_iso8601(self.stats.last_tick),
            "last_error": self.stats.last_error,
            "last_runs": dict(self.stats.last_runs),
            "active_locks": len(self.dispatcher.locks.list_active()),
        }
