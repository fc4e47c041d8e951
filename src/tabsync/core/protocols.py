"""
Canonical protocol definitions for tabsync.

Architecture:
    ::

        protocols.py
        ├── Connection     — sync DB protocol (sqlite3 adapter)
        └── Workbook       — tabular control-plane store (see store.workbook)

    Consumers:
        core/scheduling/lock_manager.py, store/workbook.py

Guardrails:
    ❌ DON'T: Duplicate Connection(Protocol) in other modules
    ✅ DO: Import from tabsync.core.protocols
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """
    Minimal SYNCHRONOUS connection interface for database operations.

    Checkpoint and row operations are modeled as synchronous; only HTTP
    calls and sleeps suspend, so the connection protocol stays sync.
    """

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute SQL statement with optional parameters."""
        ...

    def executemany(self, sql: str, params: list[tuple]) -> Any:
        """Execute SQL statement for multiple parameter sets."""
        ...

    def fetchone(self) -> Any:
        """Fetch one row from last query."""
        ...

    def fetchall(self) -> list:
        """Fetch all rows from last query."""
        ...

    def commit(self) -> None:
        """Commit current transaction."""
        ...

    def rollback(self) -> None:
        """Rollback current transaction."""
        ...


@runtime_checkable
class Workbook(Protocol):
    """
    Tabular control-plane store.

    Rows and columns are 1-indexed, row 1 being the header row of a
    sheet. Implementations may coerce written values the way a
    spreadsheet does (numeric text to numbers, ISO dates to datetimes).
    """

    def sheet_names(self) -> list[str]:
        """Names of all sheets."""
        ...

    def ensure_sheet(self, sheet: str, header: list[str] | None = None) -> None:
        """Create *sheet* if missing and write *header* into row 1 if blank."""
        ...

    def last_row(self, sheet: str) -> int:
        """Index of the last non-empty row (0 for an empty sheet)."""
        ...

    def read_range(
        self, sheet: str, row: int, col: int, num_rows: int, num_cols: int
    ) -> list[list[Any]]:
        """Bulk read a rectangular range. Missing cells read as ``""``."""
        ...

    def write_range(self, sheet: str, row: int, col: int, values: list[list[Any]]) -> None:
        """Bulk write a rectangular range in one call."""
        ...

    def append_rows(self, sheet: str, values: list[list[Any]]) -> int:
        """Append rows after the last row; returns the first written row index."""
        ...

    def clear_rows(self, sheet: str, start_row: int) -> int:
        """Delete every row at or after *start_row*; returns rows removed."""
        ...
