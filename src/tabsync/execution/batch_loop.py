"""Budgeted, resumable page-by-page sync of one scope.

Manifesto:
    The host kills any invocation that outlives its hard ceiling, and a
    full scope takes far longer than that. The loop therefore works in
    page-sized batches and persists the checkpoint after every batch, so
    that wherever the invocation stops (budget, batch limit, error or a
    hard kill) the next one resumes from the last persisted page.

ARCHITECTURE
────────────
::

    run(scope)
      │  checkpoint = load(scope)          current = cursor + 1
      ▼
    ┌─ while elapsed < budget ─────────────────────────────────────┐
    │   page  = client.fetch_page(current)                          │
    │   total_units unknown? ──► record_total_units (write-once)    │
    │   supp  = client.fetch_supplements(ids)   (failure → blanks)  │
    │   rows  = transformer.transform(page, supp)                   │
    │   writer.write_page(current, rows)        (one bulk write)    │
    │   checkpoints.advance(current)            (cursor, last_sync) │
    │   last page? ──► truncate stale rows, mark_complete, COMPLETE │
    │   batch limit reached? ──► PAUSED                             │
    │   await sleep(throttle)                                       │
    └───────────────────────────────────────────────────────────────┘
      │ budget spent
      ▼
    PAUSED (logged with position)

Guardrails:
    ❌ DON'T: Advance the cursor before the page's rows are written
    ✅ DO: Write, then advance; a crash in between rewrites the same page

    ❌ DON'T: Recompute total_units from a later page
    ✅ DO: Persist it once, on the first page, with the page size used

    ❌ DON'T: Move the cursor back to re-pull persisted pages
    ✅ DO: Reconcile with its own position; the cursor only moves forward

Tags:
    sync, batch, checkpoint, resume, budget, tabsync
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from tabsync.core.errors import ParseError, TabsyncError
from tabsync.core.logging import get_logger
from tabsync.execution.retry import Sleep
from tabsync.execution.transform import RowTransformer
from tabsync.store.rows import RowWriter

if TYPE_CHECKING:
    from tabsync.core.context import InvocationContext
    from tabsync.core.protocols import Workbook
    from tabsync.core.scheduling.registry import RowTypeSpec, SyncScope
    from tabsync.core.settings import TabsyncSettings
    from tabsync.execution.client import ApiClient, Page
    from tabsync.store.checkpoints import Checkpoint, CheckpointStore
    from tabsync.store.oplog import OperationalLog

logger = get_logger(__name__)


class SyncStatus(str, Enum):
    """How a scope's run ended."""

    COMPLETE = "complete"
    PAUSED = "paused"


@dataclass
class SyncOutcome:
    """Result of one scope run within an invocation."""

    scope_id: str
    status: SyncStatus
    pages: int = 0
    rows: int = 0
    cursor: int = -1
    total_units: int = -1
    reason: str = ""

    @property
    def complete(self) -> bool:
        return self.status == SyncStatus.COMPLETE


@dataclass
class TailRewrite:
    """Result of rewriting the page under the cursor."""

    page: Page
    page_size: int
    rows: int
    added: int


def units_for(total_count: int, page_size: int) -> int:
    """Number of pages for *total_count* records; an empty scope has one."""
    return max(1, math.ceil(total_count / page_size))


class BatchSyncLoop:
    """Runs the page loop for one scope at a time.

    The caller must hold the scope lock for the whole of :meth:`run` and
    :meth:`refresh_tail`; the loop itself never touches locks.

    Args:
        client: HTTP client for the remote API.
        workbook: Store holding the scope data sheets.
        checkpoints: Checkpoint store bound to this invocation.
        oplog: Operational log bound to this invocation.
        context: Invocation context; its clock drives the budget.
        settings: Page size, throttle, budget and batch limit.
        sleep: Awaitable used for the throttle interval.
    """

    def __init__(
        self,
        client: ApiClient,
        workbook: Workbook,
        checkpoints: CheckpointStore,
        oplog: OperationalLog,
        context: InvocationContext,
        settings: TabsyncSettings,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.workbook = workbook
        self.checkpoints = checkpoints
        self.oplog = oplog
        self.context = context
        self.settings = settings
        self.sleep = sleep

    def budget_left(self) -> float:
        return self.settings.budget_seconds - self.context.elapsed()

    async def run(self, scope: SyncScope, row_type: RowTypeSpec) -> SyncOutcome:
        """Continue *scope* from its checkpoint until complete or out of budget."""
        self.client.scope_id = scope.id
        checkpoint = self.checkpoints.initialize(scope.id)
        if checkpoint.completed:
            return self._outcome(scope, checkpoint, SyncStatus.COMPLETE, reason="already complete")

        page_size = checkpoint.page_size if checkpoint.page_size > 0 else self.settings.page_size
        total_units = checkpoint.total_units
        current = checkpoint.next_page
        if total_units != -1:
            # Cursor already on the final page: rewrite it and finish
            current = min(current, total_units - 1)

        transformer = RowTransformer(row_type)
        writer = RowWriter(self.workbook, row_type.schema(), scope.sheet)
        writer.ensure_sheet()

        self.oplog.start(scope.id, f"Starting at page {current} (page size {page_size})")
        logger.info("sync_start", scope=scope.id, page=current, total_units=total_units)

        pages = rows_written = 0
        while self.budget_left() > 0:
            page = await self.client.fetch_page(scope.endpoint, scope.params, current, page_size)

            if total_units == -1:
                total_units = self._record_total(scope, page, page_size)

            rows = await self._rows_for(scope, row_type, transformer, page)
            last_row = writer.write_page(current, page_size, rows)
            self.checkpoints.advance(scope.id, current)
            pages += 1
            rows_written += len(rows)

            self.oplog.batch(scope.id, f"Page {current + 1}/{total_units}: {len(rows)} rows")
            logger.info("batch_written", scope=scope.id, page=current, rows=len(rows))

            if current >= total_units - 1:
                writer.truncate_after(last_row)
                self.checkpoints.mark_complete(scope.id)
                self.oplog.complete(
                    scope.id, f"Complete: {total_units} pages, {writer.data_row_count()} rows"
                )
                logger.info("sync_complete", scope=scope.id, pages=total_units)
                return SyncOutcome(
                    scope.id, SyncStatus.COMPLETE, pages, rows_written, current, total_units
                )

            current += 1
            if rows_written >= self.settings.batch_size:
                return self._pause(scope, current, total_units, pages, rows_written, "batch limit reached")
            await self.sleep(self.settings.throttle_seconds)

        return self._pause(scope, current, total_units, pages, rows_written, "budget exhausted")

    async def refresh_tail(self, scope: SyncScope, row_type: RowTypeSpec) -> SyncOutcome:
        """Re-fetch the final page of a complete scope and rewrite it in place.

        Catches late additions and corrections on the page that can still
        change. Growth past the final page is handled by discovery.
        """
        checkpoint = self.checkpoints.load(scope.id)
        tail = await self.rewrite_tail(scope, row_type, checkpoint)

        if tail.page.total_count is not None and (
            units_for(tail.page.total_count, tail.page_size) > checkpoint.total_units
        ):
            logger.info("tail_refresh_growth", scope=scope.id, total_count=tail.page.total_count)
        self.oplog.batch(
            scope.id, f"Refreshed page {checkpoint.cursor + 1}/{checkpoint.total_units}: {tail.rows} rows"
        )
        return self._outcome(scope, checkpoint, SyncStatus.COMPLETE, pages=1, rows=tail.rows)

    async def rewrite_tail(
        self, scope: SyncScope, row_type: RowTypeSpec, checkpoint: Checkpoint
    ) -> TailRewrite:
        """Re-fetch the page under the cursor, rewrite it and drop rows past it.

        Only valid while the cursor sits on the final page. The checkpoint
        cursor is not moved.
        """
        self.client.scope_id = scope.id
        page_size = checkpoint.page_size if checkpoint.page_size > 0 else self.settings.page_size

        writer = RowWriter(self.workbook, row_type.schema(), scope.sheet)
        writer.ensure_sheet()
        before = writer.data_row_count()

        page = await self.client.fetch_page(scope.endpoint, scope.params, checkpoint.cursor, page_size)
        rows = await self._rows_for(scope, row_type, RowTransformer(row_type), page)
        last_row = writer.write_page(checkpoint.cursor, page_size, rows[:page_size])
        writer.truncate_after(last_row)
        self.checkpoints.touch(scope.id)

        added = writer.data_row_count() - before
        logger.info("tail_rewritten", scope=scope.id, page=checkpoint.cursor, rows=len(rows), added=added)
        return TailRewrite(page, page_size, len(rows), added)

    async def reconcile(self, scope: SyncScope, row_type: RowTypeSpec) -> SyncOutcome:
        """Re-pull every persisted page in place without moving the cursor.

        The pass keeps its own position (``reconcile_cursor``), so a pass cut
        short by the budget or the batch limit resumes where it stopped. On a
        complete scope the final page also drops rows left by a longer
        earlier pass.
        """
        self.client.scope_id = scope.id
        checkpoint = self.checkpoints.load(scope.id)
        page_size = checkpoint.page_size if checkpoint.page_size > 0 else self.settings.page_size
        through = checkpoint.cursor
        current = checkpoint.reconcile_cursor + 1
        if current > through:
            current = 0

        transformer = RowTransformer(row_type)
        writer = RowWriter(self.workbook, row_type.schema(), scope.sheet)
        writer.ensure_sheet()

        self.oplog.start(scope.id, f"Reconciliation: re-pulling from page {current + 1}")
        logger.info("reconcile_start", scope=scope.id, page=current, through=through)

        pages = rows_written = 0
        reason = "budget exhausted"
        while self.budget_left() > 0:
            page = await self.client.fetch_page(scope.endpoint, scope.params, current, page_size)
            rows = await self._rows_for(scope, row_type, transformer, page)
            last_row = writer.write_page(current, page_size, rows)
            self.checkpoints.advance_reconcile(scope.id, current)
            pages += 1
            rows_written += len(rows)
            self.oplog.batch(scope.id, f"Reconciled page {current + 1}/{through + 1}: {len(rows)} rows")

            if current >= through:
                if checkpoint.completed:
                    writer.truncate_after(last_row)
                self.checkpoints.finish_reconcile(scope.id)
                self.oplog.complete(
                    scope.id,
                    f"Reconciliation complete: {through + 1} pages, {writer.data_row_count()} rows",
                )
                logger.info("reconcile_complete", scope=scope.id, pages=through + 1)
                return self._outcome(scope, checkpoint, SyncStatus.COMPLETE, pages=pages, rows=rows_written)

            current += 1
            if rows_written >= self.settings.batch_size:
                reason = "batch limit reached"
                break
            await self.sleep(self.settings.throttle_seconds)

        self.oplog.paused(
            scope.id, f"Reconciliation paused at page {current + 1}/{through + 1} ({reason})"
        )
        logger.info("reconcile_paused", scope=scope.id, next_page=current, reason=reason)
        return self._outcome(
            scope, checkpoint, SyncStatus.PAUSED, pages=pages, rows=rows_written, reason=reason
        )

    # -- internal --------------------------------------------------------------

    def _record_total(self, scope: SyncScope, page: Page, page_size: int) -> int:
        if page.total_count is None:
            raise ParseError(
                f"First page of {scope.id} did not report a total count"
            ).with_context(scope_id=scope.id, page=page.page)
        total_units = units_for(page.total_count, page_size)
        self.checkpoints.record_total_units(scope.id, total_units, page_size)
        logger.info(
            "total_units_recorded",
            scope=scope.id,
            total_count=page.total_count,
            total_units=total_units,
            page_size=page_size,
        )
        return total_units

    async def _rows_for(
        self,
        scope: SyncScope,
        row_type: RowTypeSpec,
        transformer: RowTransformer,
        page: Page,
    ) -> list[list]:
        supplements: dict = {}
        supp = row_type.supplementary
        if supp is not None and page.records:
            ids = transformer.record_ids(page.records)
            try:
                supplements = await self.client.fetch_supplements(
                    supp.endpoint, supp.id_param, supp.key, ids, scope.params
                )
            except TabsyncError as e:
                logger.warning("supplement_failed", scope=scope.id, page=page.page, error=e.message)
                self.oplog.error(
                    scope.id,
                    f"Supplementary data unavailable for page {page.page + 1}: {e.message}",
                )
        return transformer.transform(page.records, supplements)

    def _pause(
        self,
        scope: SyncScope,
        current: int,
        total_units: int,
        pages: int,
        rows: int,
        reason: str,
    ) -> SyncOutcome:
        self.oplog.paused(
            scope.id, f"Paused at page {current + 1}/{total_units} ({reason})"
        )
        logger.info("sync_paused", scope=scope.id, next_page=current, reason=reason)
        return SyncOutcome(scope.id, SyncStatus.PAUSED, pages, rows, current - 1, total_units, reason)

    @staticmethod
    def _outcome(
        scope: SyncScope,
        checkpoint: Checkpoint,
        status: SyncStatus,
        *,
        pages: int = 0,
        rows: int = 0,
        reason: str = "",
    ) -> SyncOutcome:
        return SyncOutcome(
            scope.id, status, pages, rows, checkpoint.cursor, checkpoint.total_units, reason
        )
