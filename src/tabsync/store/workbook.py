"""
Tabular control-plane store.

The sync engine writes into a workbook: named sheets of 1-indexed rows
and columns, row 1 being each sheet's header. Three areas matter to the
core: the ``Settings`` key/value sheet (checkpoints and human-visible
configuration), one data sheet per scope, and the append-only ``Log``
sheet.

Manifesto:
    The shared store is edited by people as well as by the engine, and it
    behaves like a spreadsheet: text that looks like a number becomes a
    number, text that looks like a date becomes a date. Both backends
    reproduce that ambient coercion on purpose, so that the code above
    them (checkpoint store, row writer) is forced to own an explicit
    serialization boundary instead of trusting round trips.

    - **Persistence-agnostic:** SQLite or in-memory (tests)
    - **Bulk primitives:** One call per range read/write
    - **Spreadsheet semantics:** Blank cells read as ``""``

Architecture:
    ::

        Workbook (protocol, core.protocols)
          ├── MemoryWorkbook   ─ dict of sheets (tests)
          └── SqliteWorkbook   ─ workbook_cells table (one row per cell)

        coerce_cell("2024-03-01")  → datetime(2024, 3, 1)
        coerce_cell("42")          → 42
        coerce_cell("TRUE")        → True
        coerce_cell("'42")         → "42"   (leading apostrophe forces text)

Tags:
    workbook, spreadsheet, tabular-store, coercion, tabsync
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from typing import Any

from tabsync.core.logging import get_logger
from tabsync.core.protocols import Connection

logger = get_logger(__name__)

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
_DATE_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}"
    r"([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"
)


def coerce_cell(value: Any) -> Any:
    """Apply spreadsheet-style ambient coercion to a written value."""
    if value is None:
        return ""
    if isinstance(value, (bool, int, float, datetime)):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    if not isinstance(value, str):
        return str(value)

    text = value.strip()
    if value.startswith("'"):
        return value[1:]
    if text == "":
        return ""
    if text.upper() in ("TRUE", "FALSE"):
        return text.upper() == "TRUE"
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    if _DATE_RE.match(text):
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryWorkbook:
    """Dict-backed workbook for tests and dry runs.

    ``write_calls`` counts bulk write operations so tests can assert that a
    batch is written in exactly one call.
    """

    def __init__(self, *, coerce: bool = True) -> None:
        self._coerce = coerce
        self._sheets: dict[str, dict[int, dict[int, Any]]] = {}
        self.write_calls = 0

    def sheet_names(self) -> list[str]:
        return list(self._sheets)

    def ensure_sheet(self, sheet: str, header: list[str] | None = None) -> None:
        cells = self._sheets.setdefault(sheet, {})
        if header and not any(not _is_blank(v) for v in cells.get(1, {}).values()):
            cells[1] = {i + 1: h for i, h in enumerate(header)}

    def last_row(self, sheet: str) -> int:
        cells = self._sheets.get(sheet, {})
        rows = [r for r, cols in cells.items() if any(not _is_blank(v) for v in cols.values())]
        return max(rows, default=0)

    def read_range(
        self, sheet: str, row: int, col: int, num_rows: int, num_cols: int
    ) -> list[list[Any]]:
        cells = self._sheets.get(sheet, {})
        return [
            [cells.get(r, {}).get(c, "") for c in range(col, col + num_cols)]
            for r in range(row, row + num_rows)
        ]

    def write_range(self, sheet: str, row: int, col: int, values: list[list[Any]]) -> None:
        cells = self._sheets.setdefault(sheet, {})
        for r_offset, line in enumerate(values):
            target = cells.setdefault(row + r_offset, {})
            for c_offset, value in enumerate(line):
                stored = coerce_cell(value) if self._coerce else ("" if value is None else value)
                if _is_blank(stored):
                    target.pop(col + c_offset, None)
                else:
                    target[col + c_offset] = stored
        self.write_calls += 1

    def append_rows(self, sheet: str, values: list[list[Any]]) -> int:
        start = self.last_row(sheet) + 1
        if values:
            self.write_range(sheet, start, 1, values)
        return start

    def clear_rows(self, sheet: str, start_row: int) -> int:
        cells = self._sheets.get(sheet, {})
        doomed = [r for r in cells if r >= start_row]
        for r in doomed:
            del cells[r]
        return len(doomed)


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

WORKBOOK_SCHEMA = """
CREATE TABLE IF NOT EXISTS workbook_sheets (
    name TEXT PRIMARY KEY,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS workbook_cells (
    sheet TEXT NOT NULL,
    row INTEGER NOT NULL,
    col INTEGER NOT NULL,
    kind TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (sheet, row, col)
);
"""


def _encode(value: Any) -> tuple[str, str]:
    if isinstance(value, bool):
        return "b", "1" if value else "0"
    if isinstance(value, int):
        return "i", str(value)
    if isinstance(value, float):
        return "f", repr(value)
    if isinstance(value, datetime):
        return "d", value.isoformat()
    return "s", str(value)


def _decode(kind: str, value: str) -> Any:
    if kind == "b":
        return value == "1"
    if kind == "i":
        return int(value)
    if kind == "f":
        return float(value)
    if kind == "d":
        return datetime.fromisoformat(value)
    return value


class SqliteWorkbook:
    """Workbook persisted in SQLite, one row per non-blank cell.

    Args:
        conn: Connection satisfying :class:`~tabsync.core.protocols.Connection`.
        coerce: Apply spreadsheet-style coercion to written values.
    """

    def __init__(self, conn: Connection, *, coerce: bool = True) -> None:
        self.conn = conn
        self._coerce = coerce
        self.ensure_schema()

    def ensure_schema(self) -> None:
        for statement in WORKBOOK_SCHEMA.split(";"):
            if statement.strip():
                self.conn.execute(statement)
        self.conn.commit()

    def sheet_names(self) -> list[str]:
        rows = self.conn.execute(
            "SELECT name FROM workbook_sheets ORDER BY created_at, name"
        ).fetchall()
        return [r[0] for r in rows]

    def ensure_sheet(self, sheet: str, header: list[str] | None = None) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO workbook_sheets (name) VALUES (?)", (sheet,)
        )
        self.conn.commit()
        if header:
            existing = self.conn.execute(
                "SELECT 1 FROM workbook_cells WHERE sheet = ? AND row = 1 LIMIT 1",
                (sheet,),
            ).fetchone()
            if existing is None:
                self.write_range(sheet, 1, 1, [list(header)])

    def last_row(self, sheet: str) -> int:
        row = self.conn.execute(
            "SELECT MAX(row) FROM workbook_cells WHERE sheet = ?", (sheet,)
        ).fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    def read_range(
        self, sheet: str, row: int, col: int, num_rows: int, num_cols: int
    ) -> list[list[Any]]:
        grid: list[list[Any]] = [["" for _ in range(num_cols)] for _ in range(num_rows)]
        if num_rows <= 0 or num_cols <= 0:
            return grid
        rows = self.conn.execute(
            "SELECT row, col, kind, value FROM workbook_cells "
            "WHERE sheet = ? AND row BETWEEN ? AND ? AND col BETWEEN ? AND ?",
            (sheet, row, row + num_rows - 1, col, col + num_cols - 1),
        ).fetchall()
        for r, c, kind, value in rows:
            grid[r - row][c - col] = _decode(kind, value)
        return grid

    def write_range(self, sheet: str, row: int, col: int, values: list[list[Any]]) -> None:
        self.conn.execute("INSERT OR IGNORE INTO workbook_sheets (name) VALUES (?)", (sheet,))
        upserts: list[tuple] = []
        deletes: list[tuple] = []
        for r_offset, line in enumerate(values):
            for c_offset, value in enumerate(line):
                stored = coerce_cell(value) if self._coerce else ("" if value is None else value)
                key = (sheet, row + r_offset, col + c_offset)
                if _is_blank(stored):
                    deletes.append(key)
                else:
                    upserts.append((*key, *_encode(stored)))
        try:
            if deletes:
                self.conn.executemany(
                    "DELETE FROM workbook_cells WHERE sheet = ? AND row = ? AND col = ?",
                    deletes,
                )
            if upserts:
                self.conn.executemany(
                    "INSERT OR REPLACE INTO workbook_cells (sheet, row, col, kind, value) "
                    "VALUES (?, ?, ?, ?, ?)",
                    upserts,
                )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def append_rows(self, sheet: str, values: list[list[Any]]) -> int:
        if not values:
            return self.last_row(sheet) + 1
        # Reserve the write lock before reading MAX(row) so two processes
        # appending to the same sheet cannot pick the same start row.
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            start = self.last_row(sheet) + 1
        except Exception:
            self.conn.rollback()
            raise
        self.write_range(sheet, start, 1, values)
        return start

    def clear_rows(self, sheet: str, start_row: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(DISTINCT row) FROM workbook_cells WHERE sheet = ? AND row >= ?",
            (sheet, start_row),
        ).fetchone()
        self.conn.execute(
            "DELETE FROM workbook_cells WHERE sheet = ? AND row >= ?", (sheet, start_row)
        )
        self.conn.commit()
        removed = int(row[0]) if row else 0
        if removed:
            logger.debug("rows_cleared", sheet=sheet, start_row=start_row, rows=removed)
        return removed
