"""
CLI layer for tabsync.

Typer commands delegate to the dispatcher and stores; this package handles
only terminal transport: argument parsing, coloured output and tables.

Entry point::

    tabsync --help
"""

from tabsync.cli.app import app

__all__ = ["app"]
