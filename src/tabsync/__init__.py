"""
tabsync - resumable paginated sync from a remote API into a shared workbook.

Packages:
- tabsync.core: errors, logging, settings, invocation context, scheduling
- tabsync.store: workbook backends, checkpoints, row writer, operational log
- tabsync.execution: HTTP client with retry, row transform, batch sync loop
- tabsync.cli: the ``tabsync`` command
"""

__version__ = "0.1.0"
