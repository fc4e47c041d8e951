"""
Checkpoint store for resumable scope synchronization.

Provides "how far have I read?" tracking per scope so that a sync cut
short by the host's execution ceiling resumes exactly where the last
persisted batch left off.

Manifesto:
    The checkpoint lives in the ``Settings`` sheet next to human-edited
    configuration, so it has to survive both people and the store's own
    coercion. Values therefore cross an explicit string boundary: they
    are written as forced text and parsed back by typed accessors that
    own every coercion rule.

    - **Forward-only cursor:** ``advance()`` refuses to move backward
    - **Own reconcile position:** re-pulls track ``reconcile_cursor`` only
    - **Write-once total:** ``record_total_units()`` never overwrites
    - **Invocation-scoped positions:** One settings scan per invocation
    - **Never deleted:** ``reset()`` clears values, rows stay in place

Architecture:
    ::

        Settings sheet
        ┌──────────────────────────────┬────────────────────────────┐
        │ key                          │ value                      │
        ├──────────────────────────────┼────────────────────────────┤
        │ page_size                    │ 100          (config)      │
        │ season-2023.cursor           │ '2                         │
        │ season-2023.total_units      │ '3                         │
        │ season-2023.completed        │ 'true                      │
        │ season-2023.last_sync        │ '2026-02-15T10:00:00+00:00 │
        │ season-2023.page_size        │ '100                       │
        │ season-2023.reconcile_cursor │ '-1                        │
        └──────────────────────────────┴────────────────────────────┘

        InvocationContext.positions = {"season-2023.cursor": 3, ...}
        (built by one scan, reused for every get/set in the invocation)

Coercion rules (read side):
    - blank or absent          → typed default
    - store-native datetime    → ISO-8601 text
    - unparsable integer       → default
    - boolean                  → true/false/yes/no/1/0

Examples:
    >>> store = CheckpointStore(MemoryWorkbook(), InvocationContext())
    >>> store.load("season-2023").cursor
    -1
    >>> store.advance("season-2023", 0)
    >>> store.get("season-2023", "cursor")
    0

Tags:
    checkpoint, cursor, resume, incremental, tabsync
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from tabsync.core.context import InvocationContext
from tabsync.core.errors import CheckpointError
from tabsync.core.logging import get_logger
from tabsync.core.protocols import Workbook
from tabsync.core.settings import SETTINGS_HEADER, SETTINGS_SHEET
from tabsync.core.timestamps import to_iso8601, utc_now

logger = get_logger(__name__)

CURSOR = "cursor"
TOTAL_UNITS = "total_units"
COMPLETED = "completed"
LAST_SYNC = "last_sync"
PAGE_SIZE = "page_size"
RECONCILE_CURSOR = "reconcile_cursor"

# Typed defaults; the type of each default drives read-side coercion.
DEFAULTS: dict[str, Any] = {
    CURSOR: -1,
    TOTAL_UNITS: -1,
    COMPLETED: False,
    LAST_SYNC: "",
    PAGE_SIZE: -1,
    RECONCILE_CURSOR: -1,
}

_TRUE = {"true", "1", "yes", "y"}
_FALSE = {"false", "0", "no", "n"}


class ScopeState(str, Enum):
    """Per-scope sync state derived from the checkpoint."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Progress snapshot for one scope.

    Attributes:
        scope_id: Scope this checkpoint belongs to.
        cursor: Last persisted 0-indexed page, ``-1`` when not started.
        total_units: Number of pages, ``-1`` when unknown.
        completed: Whether the last page has been persisted.
        last_sync: ISO text of the last successful batch, ``""`` if none.
        page_size: Page size the scope was started with, ``-1`` if unknown.
        reconcile_cursor: Last page re-pulled by the running reconciliation
            pass, ``-1`` when no pass is under way. Independent of ``cursor``.
    """

    scope_id: str
    cursor: int = -1
    total_units: int = -1
    completed: bool = False
    last_sync: str = ""
    page_size: int = -1
    reconcile_cursor: int = -1

    @property
    def state(self) -> ScopeState:
        if self.completed:
            return ScopeState.COMPLETE
        if self.cursor < 0:
            return ScopeState.NOT_STARTED
        return ScopeState.IN_PROGRESS

    @property
    def next_page(self) -> int:
        return self.cursor + 1


def serialize_value(value: Any) -> str:
    """Encode *value* as forced text so the store cannot reinterpret it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, datetime):
        text = to_iso8601(value)
    else:
        text = str(value)
    return f"'{text}" if text else ""


def parse_value(raw: Any, default: Any) -> Any:
    """Coerce a raw cell value to the type of *default*."""
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return default

    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, (int, float)):
            return bool(raw)
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        return default

    if isinstance(default, int):
        if isinstance(raw, bool) or isinstance(raw, (datetime, date)):
            return default
        if isinstance(raw, int):
            return raw
        if isinstance(raw, float):
            return int(raw) if raw.is_integer() else default
        try:
            return int(str(raw).strip())
        except ValueError:
            return default

    # Text
    if isinstance(raw, datetime):
        return to_iso8601(raw)
    if isinstance(raw, date):
        return raw.isoformat()
    if isinstance(raw, bool):
        return "true" if raw else "false"
    if isinstance(raw, float) and raw.is_integer():
        return str(int(raw))
    return str(raw)


class CheckpointStore:
    """Typed key/value checkpoint access on the settings sheet.

    Args:
        workbook: Tabular control-plane store.
        context: Invocation context owning the position cache.
        sheet: Settings sheet name.
    """

    def __init__(
        self,
        workbook: Workbook,
        context: InvocationContext,
        *,
        sheet: str = SETTINGS_SHEET,
    ) -> None:
        self.workbook = workbook
        self.context = context
        self.sheet = sheet
        self._scanned_through = 0

    # -- key/value primitives ------------------------------------------------

    @staticmethod
    def key_for(scope_id: str, key: str) -> str:
        return f"{scope_id}.{key}"

    def get(self, scope_id: str, key: str) -> Any:
        """Typed value for ``scope_id.key``; the typed default when absent."""
        default = DEFAULTS.get(key, "")
        row = self._positions().get(self.key_for(scope_id, key))
        if row is None:
            return default
        raw = self.workbook.read_range(self.sheet, row, 2, 1, 1)[0][0]
        return parse_value(raw, default)

    def set(self, scope_id: str, key: str, value: Any) -> None:
        """Persist ``scope_id.key`` as forced text."""
        full_key = self.key_for(scope_id, key)
        encoded = serialize_value(value)

        row = self._positions().get(full_key)
        if row is not None and not self._row_holds(row, full_key):
            # Someone edited the sheet since the scan
            self.context.invalidate_positions()
            row = self._positions().get(full_key)

        if row is None:
            row = self.workbook.append_rows(self.sheet, [[full_key, encoded]])
            self._positions()[full_key] = row
            self._scanned_through = max(self._scanned_through, row)
        else:
            self.workbook.write_range(self.sheet, row, 1, [[full_key, encoded]])

    # -- typed checkpoint operations ------------------------------------------

    def load(self, scope_id: str) -> Checkpoint:
        """Read the whole checkpoint for *scope_id*."""
        return Checkpoint(
            scope_id=scope_id,
            cursor=self.get(scope_id, CURSOR),
            total_units=self.get(scope_id, TOTAL_UNITS),
            completed=self.get(scope_id, COMPLETED),
            last_sync=self.get(scope_id, LAST_SYNC),
            page_size=self.get(scope_id, PAGE_SIZE),
            reconcile_cursor=self.get(scope_id, RECONCILE_CURSOR),
        )

    def refresh(self, scope_id: str) -> Checkpoint:
        """Re-read *scope_id* after acquiring its lock.

        Rows already cached never move, so their values are read fresh
        anyway; the settings sheet is rescanned only when another
        invocation has appended keys since this invocation's scan.
        """
        if self.context.positions is not None and (
            self.workbook.last_row(self.sheet) != self._scanned_through
        ):
            self.context.invalidate_positions()
        return self.load(scope_id)

    def initialize(self, scope_id: str) -> Checkpoint:
        """Create the checkpoint at cursor=-1 if this scope has none yet."""
        if self.key_for(scope_id, CURSOR) not in self._positions():
            self.set(scope_id, CURSOR, -1)
            self.set(scope_id, COMPLETED, False)
            logger.info("checkpoint_created", scope=scope_id)
        return self.load(scope_id)

    def advance(self, scope_id: str, cursor: int, *, synced_at: datetime | None = None) -> None:
        """Move the cursor forward to *cursor* and stamp ``last_sync``.

        Raises:
            CheckpointError: if *cursor* is behind the persisted cursor.
        """
        current = self.get(scope_id, CURSOR)
        if cursor < current:
            raise CheckpointError(
                f"Cursor for {scope_id} cannot move backward ({current} -> {cursor})"
            ).with_context(scope_id=scope_id, page=cursor)
        self.set(scope_id, CURSOR, cursor)
        self.set(scope_id, LAST_SYNC, synced_at or utc_now())

    def record_total_units(self, scope_id: str, total_units: int, page_size: int) -> bool:
        """Persist the page count once. Returns ``False`` if already known."""
        if self.get(scope_id, TOTAL_UNITS) != -1:
            return False
        self.set(scope_id, TOTAL_UNITS, total_units)
        self.set(scope_id, PAGE_SIZE, page_size)
        return True

    def extend_total_units(self, scope_id: str, total_units: int) -> None:
        """Grow a known page count after new-unit discovery and reopen the scope."""
        known = self.get(scope_id, TOTAL_UNITS)
        if known == -1 or total_units <= known:
            raise CheckpointError(
                f"Cannot extend total_units for {scope_id} from {known} to {total_units}"
            ).with_context(scope_id=scope_id)
        self.set(scope_id, TOTAL_UNITS, total_units)
        self.set(scope_id, COMPLETED, False)

    def mark_complete(self, scope_id: str) -> None:
        checkpoint = self.load(scope_id)
        if checkpoint.total_units == -1 or checkpoint.cursor != checkpoint.total_units - 1:
            raise CheckpointError(
                f"Scope {scope_id} cannot complete at cursor {checkpoint.cursor} "
                f"of {checkpoint.total_units} pages"
            ).with_context(scope_id=scope_id, page=checkpoint.cursor)
        self.set(scope_id, COMPLETED, True)

    def touch(self, scope_id: str, synced_at: datetime | None = None) -> None:
        self.set(scope_id, LAST_SYNC, synced_at or utc_now())

    def advance_reconcile(self, scope_id: str, page: int) -> None:
        """Record *page* as re-pulled by the running reconciliation pass."""
        self.set(scope_id, RECONCILE_CURSOR, page)

    def finish_reconcile(self, scope_id: str, synced_at: datetime | None = None) -> None:
        self.set(scope_id, RECONCILE_CURSOR, -1)
        self.touch(scope_id, synced_at)

    def reset(self, scope_id: str) -> None:
        """Operator reset: back to NOT_STARTED. Rows are kept, values cleared."""
        self.set(scope_id, CURSOR, -1)
        self.set(scope_id, TOTAL_UNITS, -1)
        self.set(scope_id, COMPLETED, False)
        self.set(scope_id, PAGE_SIZE, -1)
        if self.key_for(scope_id, RECONCILE_CURSOR) in self._positions():
            self.set(scope_id, RECONCILE_CURSOR, -1)
        logger.info("checkpoint_reset", scope=scope_id)

    # -- internal --------------------------------------------------------------

    def _positions(self) -> dict[str, int]:
        if self.context.positions is None:
            self.context.positions = self._scan()
        return self.context.positions

    def _scan(self) -> dict[str, int]:
        self.workbook.ensure_sheet(self.sheet, SETTINGS_HEADER)
        last = self.workbook.last_row(self.sheet)
        positions: dict[str, int] = {}
        if last >= 2:
            keys = self.workbook.read_range(self.sheet, 2, 1, last - 1, 1)
            for offset, (key,) in enumerate(keys):
                if key not in ("", None):
                    positions.setdefault(str(key), offset + 2)
        self._scanned_through = last
        self.context.scans += 1
        logger.debug("settings_scanned", rows=len(positions), scans=self.context.scans)
        return positions

    def _row_holds(self, row: int, full_key: str) -> bool:
        found = self.workbook.read_range(self.sheet, row, 1, 1, 1)[0][0]
        return str(found) == full_key
