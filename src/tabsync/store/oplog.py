"""
Append-only operational log.

Every state transition the engine makes is appended to the ``Log`` sheet
with a status token, so operators can follow a multi-invocation sync
without access to process logs. Each entry is also emitted through
structlog.
"""

from __future__ import annotations

from enum import Enum

from tabsync.core.context import InvocationContext
from tabsync.core.logging import get_logger
from tabsync.core.protocols import Workbook
from tabsync.core.timestamps import to_iso8601, utc_now

logger = get_logger(__name__)

LOG_SHEET = "Log"
LOG_HEADER = ["timestamp", "status", "scope", "operation", "message", "invocation"]


class LogStatus(str, Enum):
    """Status tokens understood by the log consumers."""

    START = "START"
    BATCH = "BATCH"
    COMPLETE = "COMPLETE"
    PAUSED = "PAUSED"
    SKIP = "SKIP"
    ERROR = "ERROR"
    RETRY = "RETRY"


_LEVELS = {
    LogStatus.ERROR: "error",
    LogStatus.RETRY: "warning",
    LogStatus.SKIP: "info",
}


class OperationalLog:
    """Writes status rows to the ``Log`` sheet."""

    def __init__(self, workbook: Workbook, context: InvocationContext, *, sheet: str = LOG_SHEET):
        self.workbook = workbook
        self.context = context
        self.sheet = sheet
        self._ready = False

    def record(self, status: LogStatus, message: str, *, scope: str = "") -> None:
        if not self._ready:
            self.workbook.ensure_sheet(self.sheet, LOG_HEADER)
            self._ready = True
        self.workbook.append_rows(
            self.sheet,
            [[
                to_iso8601(utc_now()),
                status.value,
                scope,
                self.context.operation,
                # Leading apostrophe keeps messages like "2/3" as text
                f"'{message}",
                self.context.invocation_id,
            ]],
        )
        level = _LEVELS.get(status, "info")
        getattr(logger, level)("oplog", status=status.value, scope=scope, message=message)

    def start(self, scope: str, message: str) -> None:
        self.record(LogStatus.START, message, scope=scope)

    def batch(self, scope: str, message: str) -> None:
        self.record(LogStatus.BATCH, message, scope=scope)

    def complete(self, scope: str, message: str) -> None:
        self.record(LogStatus.COMPLETE, message, scope=scope)

    def paused(self, scope: str, message: str) -> None:
        self.record(LogStatus.PAUSED, message, scope=scope)

    def skip(self, scope: str, reason: str) -> None:
        self.record(LogStatus.SKIP, reason, scope=scope)

    def error(self, scope: str, message: str) -> None:
        self.record(LogStatus.ERROR, message, scope=scope)

    def retry(self, scope: str, message: str) -> None:
        self.record(LogStatus.RETRY, message, scope=scope)


def read_log(workbook: Workbook, *, limit: int = 50, sheet: str = LOG_SHEET) -> list[dict[str, str]]:
    """Most recent *limit* log entries, oldest first."""
    if sheet not in workbook.sheet_names():
        return []
    last = workbook.last_row(sheet)
    if last < 2:
        return []
    first = max(2, last - limit + 1)
    rows = workbook.read_range(sheet, first, 1, last - first + 1, len(LOG_HEADER))
    return [
        {name: (to_iso8601(v) if hasattr(v, "isoformat") else str(v)) for name, v in zip(LOG_HEADER, row)}
        for row in rows
    ]
