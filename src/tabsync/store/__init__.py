"""Control-plane store: workbook backends, checkpoints, rows and the operational log."""

from tabsync.store.checkpoints import Checkpoint, CheckpointStore, ScopeState
from tabsync.store.oplog import LogStatus, OperationalLog, read_log
from tabsync.store.rows import RowSchema, RowWriter
from tabsync.store.workbook import MemoryWorkbook, SqliteWorkbook, coerce_cell

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "LogStatus",
    "MemoryWorkbook",
    "OperationalLog",
    "RowSchema",
    "RowWriter",
    "ScopeState",
    "SqliteWorkbook",
    "coerce_cell",
    "read_log",
]
