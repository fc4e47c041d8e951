"""Sync dispatcher - entry point for every named operation.

Manifesto:
    The host scheduler knows nothing about scopes. It fires named
    operations on a cadence (``continue`` every 10 minutes, ``refresh``
    every 2 hours, ...) and each invocation has a few minutes to live.
    The dispatcher turns one operation into per-scope work: classify
    every scope with the skip policy, take the scope lock, re-read the
    checkpoint, run the action, release the lock. Scheduled invocations
    never fail loudly: contention and errors are logged and the next
    tick picks the work up again.

Tags:
    dispatcher, scheduling, locks, policy, resume, tabsync

┌──────────────────────────────────────────────────────────────────────────────┐
│  SYNC DISPATCHER                                                              │
│                                                                               │
│   run(operation, trigger, scope_ids)                                          │
│      │                                                                        │
│      ├── InvocationContext (positions cache, budget clock, invocation id)     │
│      │                                                                        │
│      ├── snapshot? ──► status rows → "Snapshots" sheet (no lock, no network)  │
│      │                                                                        │
│      └── for each scope in registry:                                          │
│            ├── decide(operation, scope, checkpoint)  ── skip? ─► SKIP(reason) │
│            ├── budget spent? ──► stop                                         │
│            ├── acquire("scope:<id>")                                          │
│            │      busy: scheduled ─► SKIP(busy) / interactive ─► LockBusyError│
│            ├── checkpoints.refresh(scope) + decide again                       │
│            ├── CONTINUE      ─► BatchSyncLoop.run                              │
│            ├── TAIL_REFRESH  ─► BatchSyncLoop.refresh_tail                     │
│            ├── DISCOVER      ─► rewrite final page, extend total_units         │
│            ├── RECONCILE     ─► BatchSyncLoop.reconcile (cursor untouched)     │
│            ├── RESET         ─► reset checkpoint (interactive only)            │
│            └── release(token)                                                 │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx

from tabsync.core.context import InvocationContext, Trigger
from tabsync.core.errors import LockBusyError, ParseError, TabsyncError
from tabsync.core.logging import LogContext, get_logger
from tabsync.core.protocols import Workbook
from tabsync.core.scheduling.lock_manager import LockManager
from tabsync.core.scheduling.policy import Action, SyncOperation, decide, is_frozen
from tabsync.core.scheduling.registry import RowTypeSpec, ScopeRegistry, SyncScope
from tabsync.core.settings import TabsyncSettings
from tabsync.core.timestamps import from_iso8601, to_iso8601, utc_now
from tabsync.execution.batch_loop import BatchSyncLoop, SyncOutcome, units_for
from tabsync.execution.client import ApiClient
from tabsync.execution.retry import Sleep
from tabsync.store.checkpoints import Checkpoint, CheckpointStore
from tabsync.store.oplog import OperationalLog
from tabsync.store.rows import HEADER_ROWS

logger = get_logger(__name__)

SNAPSHOT_SHEET = "Snapshots"
SNAPSHOT_HEADER = [
    "captured_at",
    "scope",
    "kind",
    "state",
    "cursor",
    "total_units",
    "completed",
    "last_sync",
    "rows",
    "stale",
]


@dataclass
class ScopeResult:
    """What happened to one scope during an invocation."""

    scope_id: str
    status: str
    action: str = ""
    reason: str = ""
    pages: int = 0
    rows: int = 0
    error: str = ""

    @classmethod
    def from_outcome(cls, action: Action, outcome: SyncOutcome) -> ScopeResult:
        return cls(
            scope_id=outcome.scope_id,
            status=outcome.status.value,
            action=action.value,
            reason=outcome.reason,
            pages=outcome.pages,
            rows=outcome.rows,
        )


@dataclass
class DispatchReport:
    """Summary of one dispatcher invocation."""

    invocation_id: str
    operation: str
    trigger: str
    results: list[ScopeResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    def by_status(self, status: str) -> list[ScopeResult]:
        return [r for r in self.results if r.status == status]

    @property
    def skipped(self) -> list[ScopeResult]:
        return self.by_status("skipped")

    @property
    def errors(self) -> list[ScopeResult]:
        return self.by_status("error")

    def result_for(self, scope_id: str) -> ScopeResult | None:
        return next((r for r in self.results if r.scope_id == scope_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "invocation_id": self.invocation_id,
            "operation": self.operation,
            "trigger": self.trigger,
            "started_at": to_iso8601(self.started_at),
            "finished_at": to_iso8601(self.finished_at),
            "results": [asdict(r) for r in self.results],
        }


@dataclass
class ScopeStatus:
    """Read-only view of one scope for status reports and snapshots."""

    scope_id: str
    kind: str
    finalized: bool
    state: str
    cursor: int
    total_units: int
    completed: bool
    last_sync: str
    page_size: int
    rows: int
    frozen: bool
    stale: bool

    def to_row(self, captured_at: datetime) -> list[Any]:
        return [
            to_iso8601(captured_at),
            self.scope_id,
            self.kind,
            self.state,
            self.cursor,
            self.total_units,
            self.completed,
            f"'{self.last_sync}" if self.last_sync else "",
            self.rows,
            self.stale,
        ]


@dataclass
class DispatcherStats:
    """Counters across invocations of one dispatcher instance."""

    invocations: int = 0
    scopes_run: int = 0
    scopes_skipped: int = 0
    scopes_busy: int = 0
    scopes_failed: int = 0
    last_invocation: datetime | None = None
    last_error: str | None = None


class SyncDispatcher:
    """Runs named operations over the scope registry.

    Args:
        registry: Declared scopes and row types.
        workbook: Control-plane store.
        locks: Lock manager for ``scope:<id>`` locks.
        settings: Effective configuration.
        transport: Optional httpx transport for the API client.
        sleep: Awaitable used for retry backoff and throttling.
        clock: Monotonic clock for the invocation budget.
        now: Wall clock for staleness and snapshots.
    """

    def __init__(
        self,
        registry: ScopeRegistry,
        workbook: Workbook,
        locks: LockManager,
        settings: TabsyncSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.workbook = workbook
        self.locks = locks
        self.settings = settings
        self.transport = transport
        self.sleep = sleep
        self.clock = clock
        self.now = now
        self.stats = DispatcherStats()

    # =========================================================================
    # Entry points
    # =========================================================================

    async def run(
        self,
        operation: SyncOperation | str,
        trigger: Trigger = Trigger.SCHEDULED,
        scope_ids: list[str] | None = None,
    ) -> DispatchReport:
        """Run *operation* over *scope_ids* (default: every registered scope).

        Raises:
            LockBusyError: interactive trigger and a scope lock is held.
            TabsyncError: interactive trigger and a scope failed.
        """
        operation = SyncOperation(operation)
        ctx = InvocationContext(trigger=trigger, operation=operation.value, clock=self.clock)
        report = DispatchReport(ctx.invocation_id, operation.value, trigger.value, started_at=self.now())
        self.stats.invocations += 1
        self.stats.last_invocation = report.started_at

        async with LogContext(
            invocation_id=ctx.invocation_id, operation=operation.value, trigger=trigger.value
        ):
            logger.info("dispatch_start", scopes=scope_ids or "all")
            checkpoints = CheckpointStore(self.workbook, ctx)
            oplog = OperationalLog(self.workbook, ctx)
            scopes = self.registry.select(scope_ids)

            if operation == SyncOperation.SNAPSHOT:
                report.results.extend(self._snapshot(ctx, checkpoints, oplog, scopes))
            elif not operation.uses_network:
                for scope in scopes:
                    report.results.append(await self._run_scope(operation, scope, ctx, checkpoints, oplog, None))
            else:
                async with ApiClient.from_settings(
                    self.settings,
                    oplog=oplog,
                    sleep=self.sleep,
                    transport=self.transport,
                    time_left=lambda: self.settings.budget_seconds - ctx.elapsed(),
                ) as client:
                    for scope in scopes:
                        if ctx.elapsed() >= self.settings.budget_seconds:
                            logger.info("dispatch_budget_spent", next_scope=scope.id)
                            break
                        report.results.append(
                            await self._run_scope(operation, scope, ctx, checkpoints, oplog, client)
                        )

            report.finished_at = self.now()
            logger.info(
                "dispatch_complete",
                results=len(report.results),
                skipped=len(report.skipped),
                errors=len(report.errors),
                elapsed=round(ctx.elapsed(), 3),
            )
        return report

    async def reset(self, scope_id: str, trigger: Trigger = Trigger.INTERACTIVE) -> DispatchReport:
        """Operator reset of one scope back to NOT_STARTED."""
        return await self.run(SyncOperation.RESET, trigger, [scope_id])

    def status(self) -> list[ScopeStatus]:
        """Per-scope state for every registered scope. Takes no locks."""
        ctx = InvocationContext(trigger=Trigger.INTERACTIVE, operation="status", clock=self.clock)
        return self._statuses(CheckpointStore(self.workbook, ctx), self.registry.all())

    # =========================================================================
    # Per-scope dispatch
    # =========================================================================

    async def _run_scope(
        self,
        operation: SyncOperation,
        scope: SyncScope,
        ctx: InvocationContext,
        checkpoints: CheckpointStore,
        oplog: OperationalLog,
        client: ApiClient | None,
    ) -> ScopeResult:
        if operation == SyncOperation.RESET and not ctx.interactive:
            return self._skip(scope, "operator only", oplog)

        decision = decide(operation, scope, checkpoints.load(scope.id))
        if decision.skip:
            return self._skip(scope, decision.reason, oplog)

        wait_ms = (
            self.settings.interactive_lock_wait_ms
            if ctx.interactive
            else self.settings.scheduled_lock_wait_ms
        )
        token = await self.locks.acquire(scope.lock_name, wait_ms, holder=ctx.invocation_id)
        if token is None:
            self.stats.scopes_busy += 1
            if ctx.interactive:
                raise LockBusyError(scope.lock_name, self.locks.holder(scope.lock_name))
            return self._skip(scope, "busy", oplog)

        try:
            checkpoint = checkpoints.refresh(scope.id)
            decision = decide(operation, scope, checkpoint)
            if decision.skip:
                return self._skip(scope, decision.reason, oplog)

            logger.info("scope_dispatch", scope=scope.id, action=decision.action.value)
            result = await self._execute(decision.action, scope, checkpoint, ctx, checkpoints, oplog, client)
            self.stats.scopes_run += 1
            return result
        except Exception as e:
            self.stats.scopes_failed += 1
            self.stats.last_error = str(e)
            message = e.message if isinstance(e, TabsyncError) else f"{type(e).__name__}: {e}"
            oplog.error(scope.id, message)
            logger.error(
                "scope_failed",
                scope=scope.id,
                error=message,
                error_type=type(e).__name__,
                **({"details": e.to_dict()} if isinstance(e, TabsyncError) else {}),
            )
            if ctx.interactive:
                raise
            return ScopeResult(scope.id, "error", decision.action.value, error=message)
        finally:
            self.locks.release(token)

    async def _execute(
        self,
        action: Action,
        scope: SyncScope,
        checkpoint: Checkpoint,
        ctx: InvocationContext,
        checkpoints: CheckpointStore,
        oplog: OperationalLog,
        client: ApiClient | None,
    ) -> ScopeResult:
        row_type = self.registry.row_type_for(scope)

        if action == Action.RESET:
            checkpoints.reset(scope.id)
            oplog.start(scope.id, "Checkpoint reset; next continue starts from page 1")
            return ScopeResult(scope.id, "reset", action.value)

        loop = BatchSyncLoop(client, self.workbook, checkpoints, oplog, ctx, self.settings, sleep=self.sleep)

        if action == Action.CONTINUE:
            return ScopeResult.from_outcome(action, await loop.run(scope, row_type))

        if action == Action.TAIL_REFRESH:
            return ScopeResult.from_outcome(action, await loop.refresh_tail(scope, row_type))

        if action == Action.DISCOVER:
            return await self._discover(scope, row_type, checkpoint, checkpoints, loop, oplog, client)

        return ScopeResult.from_outcome(action, await loop.reconcile(scope, row_type))

    async def _discover(
        self,
        scope: SyncScope,
        row_type: RowTypeSpec,
        checkpoint: Checkpoint,
        checkpoints: CheckpointStore,
        loop: BatchSyncLoop,
        oplog: OperationalLog,
        client: ApiClient,
    ) -> ScopeResult:
        """Pick up records added upstream since the scope's final page was written.

        When the cursor is on the final page, that page is rewritten first, so
        records that land on it are kept even when the page count does not
        change. Growth past it extends ``total_units`` and reopens the scope;
        the cursor stays where it is.
        """
        client.scope_id = scope.id
        page_size = checkpoint.page_size if checkpoint.page_size > 0 else self.settings.page_size
        added = 0
        if checkpoint.cursor >= checkpoint.total_units - 1:
            tail = await loop.rewrite_tail(scope, row_type, checkpoint)
            page, added = tail.page, tail.added
        else:
            page = await client.fetch_page(scope.endpoint, scope.params, 0, page_size)
        if page.total_count is None:
            raise ParseError(
                f"Discovery for {scope.id} got no total count"
            ).with_context(scope_id=scope.id, page=page.page)

        remote_units = units_for(page.total_count, page_size)
        if remote_units <= checkpoint.total_units:
            if remote_units < checkpoint.total_units:
                logger.warning(
                    "remote_units_shrank",
                    scope=scope.id,
                    known=checkpoint.total_units,
                    remote=remote_units,
                )
            if added > 0:
                oplog.batch(scope.id, f"Discovered {added} new rows on page {checkpoint.cursor + 1}")
                logger.info("rows_discovered", scope=scope.id, page=checkpoint.cursor, rows=added)
                return ScopeResult(scope.id, "refreshed", Action.DISCOVER.value, pages=1, rows=added)
            return ScopeResult(scope.id, "unchanged", Action.DISCOVER.value)

        checkpoints.extend_total_units(scope.id, remote_units)
        oplog.batch(
            scope.id,
            f"Discovered {remote_units - checkpoint.total_units} new pages "
            f"({checkpoint.total_units} -> {remote_units})",
        )
        logger.info("units_discovered", scope=scope.id, known=checkpoint.total_units, remote=remote_units)
        return ScopeResult(
            scope.id,
            "extended",
            Action.DISCOVER.value,
            pages=remote_units - checkpoint.total_units,
            rows=max(added, 0),
        )

    def _skip(self, scope: SyncScope, reason: str, oplog: OperationalLog) -> ScopeResult:
        self.stats.scopes_skipped += 1
        oplog.skip(scope.id, reason)
        return ScopeResult(scope.id, "skipped", reason=reason)

    # =========================================================================
    # Status and snapshots
    # =========================================================================

    def _statuses(self, checkpoints: CheckpointStore, scopes: list[SyncScope]) -> list[ScopeStatus]:
        now = self.now()
        stale_after = timedelta(minutes=self.settings.stale_after_minutes)
        sheets = set(self.workbook.sheet_names())
        statuses = []
        for scope in scopes:
            checkpoint = checkpoints.load(scope.id)
            frozen = is_frozen(scope, checkpoint)
            synced = from_iso8601(checkpoint.last_sync)
            rows = (
                max(0, self.workbook.last_row(scope.sheet) - HEADER_ROWS)
                if scope.sheet in sheets
                else 0
            )
            statuses.append(
                ScopeStatus(
                    scope_id=scope.id,
                    kind=scope.kind.value,
                    finalized=scope.finalized,
                    state=checkpoint.state.value,
                    cursor=checkpoint.cursor,
                    total_units=checkpoint.total_units,
                    completed=checkpoint.completed,
                    last_sync=checkpoint.last_sync,
                    page_size=checkpoint.page_size,
                    rows=rows,
                    frozen=frozen,
                    stale=not frozen and (synced is None or now - synced > stale_after),
                )
            )
        return statuses

    def _snapshot(
        self,
        ctx: InvocationContext,
        checkpoints: CheckpointStore,
        oplog: OperationalLog,
        scopes: list[SyncScope],
    ) -> list[ScopeResult]:
        captured_at = self.now()
        last = self._last_snapshot_at()
        max_age = timedelta(hours=self.settings.snapshot_max_age_hours)
        if not ctx.interactive and last is not None and captured_at - last < max_age:
            oplog.skip("", f"snapshot taken {to_iso8601(last)}")
            return [ScopeResult(scope.id, "skipped", Action.SNAPSHOT.value, reason="fresh") for scope in scopes]

        statuses = self._statuses(checkpoints, scopes)
        self.workbook.ensure_sheet(SNAPSHOT_SHEET, SNAPSHOT_HEADER)
        self.workbook.append_rows(SNAPSHOT_SHEET, [s.to_row(captured_at) for s in statuses])
        oplog.complete("", f"Snapshot of {len(statuses)} scopes")
        return [ScopeResult(s.scope_id, "captured", Action.SNAPSHOT.value) for s in statuses]

    def _last_snapshot_at(self) -> datetime | None:
        if SNAPSHOT_SHEET not in self.workbook.sheet_names():
            return None
        last = self.workbook.last_row(SNAPSHOT_SHEET)
        if last <= HEADER_ROWS:
            return None
        value = self.workbook.read_range(SNAPSHOT_SHEET, last, 1, 1, 1)[0][0]
        if isinstance(value, datetime):
            return value if value.tzinfo else from_iso8601(value.isoformat())
        return from_iso8601(str(value))
