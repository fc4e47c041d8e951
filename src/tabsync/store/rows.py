"""
Row writer: fixed-width, position-addressed bulk writes.

Every scope owns one data sheet. Page ``N`` of a scope always lands on
data rows ``N * page_size .. N * page_size + len(page) - 1`` (offset by
the header), so rewriting a page after a crash overwrites the same cells
instead of appending duplicates.

Guardrails:
    ❌ DON'T: Write a batch before every row has been width-checked
    ✅ DO: Validate the whole batch, then write it in one call

    ❌ DON'T: Append pages to the end of the sheet
    ✅ DO: Address rows by page position so re-runs are idempotent
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tabsync.core.errors import RowWidthError, ValidationError
from tabsync.core.logging import get_logger
from tabsync.core.protocols import Workbook

logger = get_logger(__name__)

HEADER_ROWS = 1


@dataclass(frozen=True, slots=True)
class RowSchema:
    """Declared column order and width for one row type."""

    name: str
    columns: tuple[str, ...] = field(default_factory=tuple)

    @property
    def width(self) -> int:
        return len(self.columns)

    def validate(self, rows: list[list[Any]]) -> None:
        """Raise :class:`RowWidthError` on the first row of the wrong width."""
        for index, row in enumerate(rows):
            if len(row) != self.width:
                raise RowWidthError(expected=self.width, actual=len(row), row_index=index)


class RowWriter:
    """Writes page-sized batches of rows into a scope's data sheet."""

    def __init__(self, workbook: Workbook, schema: RowSchema, sheet: str) -> None:
        self.workbook = workbook
        self.schema = schema
        self.sheet = sheet

    def ensure_sheet(self) -> None:
        self.workbook.ensure_sheet(self.sheet, list(self.schema.columns))

    @staticmethod
    def first_row_for(page: int, page_size: int) -> int:
        """Physical row of the first record of *page*."""
        return HEADER_ROWS + page * page_size + 1

    def write_page(self, page: int, page_size: int, rows: list[list[Any]]) -> int:
        """Validate and write one page in a single bulk call.

        Returns:
            Physical index of the last row written, or of the row before the
            page when the page is empty.

        Raises:
            RowWidthError: a row does not match the schema width. Nothing
                is written.
            ValidationError: the page holds more rows than ``page_size``.
        """
        self.schema.validate(rows)
        if len(rows) > page_size:
            raise ValidationError(
                f"Page {page} has {len(rows)} rows, more than page size {page_size}"
            ).with_context(page=page)

        start = self.first_row_for(page, page_size)
        if rows:
            self.workbook.write_range(self.sheet, start, 1, rows)
        logger.debug("page_written", sheet=self.sheet, page=page, start_row=start, rows=len(rows))
        return start + len(rows) - 1

    def truncate_after(self, last_row: int) -> int:
        """Drop stale rows below *last_row* left by an earlier, longer pass."""
        removed = self.workbook.clear_rows(self.sheet, last_row + 1)
        if removed:
            logger.info("stale_rows_removed", sheet=self.sheet, rows=removed, after=last_row)
        return removed

    def data_row_count(self) -> int:
        return max(0, self.workbook.last_row(self.sheet) - HEADER_ROWS)
