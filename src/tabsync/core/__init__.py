"""
Core primitives shared by every tabsync layer.

- errors: ``TabsyncError`` hierarchy
- logging: structlog configuration and ``LogContext``
- settings: ``TabsyncSettings`` (env + settings sheet)
- context: per-invocation ``InvocationContext``
- protocols: ``Connection`` and ``Workbook`` contracts
"""

from tabsync.core.context import InvocationContext, Trigger
from tabsync.core.errors import (
    CheckpointError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    LockBusyError,
    RequestError,
    RetryExhaustedError,
    RowWidthError,
    TabsyncError,
    TransientError,
)
from tabsync.core.logging import LogContext, configure_logging, get_logger
from tabsync.core.protocols import Connection, Workbook
from tabsync.core.settings import TabsyncSettings, load_settings
from tabsync.core.sqlite_conn import SqliteConnection

__all__ = [
    "CheckpointError",
    "ConfigError",
    "Connection",
    "ErrorCategory",
    "ErrorContext",
    "InvocationContext",
    "LockBusyError",
    "LogContext",
    "RequestError",
    "RetryExhaustedError",
    "RowWidthError",
    "SqliteConnection",
    "TabsyncError",
    "TabsyncSettings",
    "TransientError",
    "Trigger",
    "Workbook",
    "configure_logging",
    "get_logger",
    "load_settings",
]
