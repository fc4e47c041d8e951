"""
CLI: ``tabsync serve`` — run the cadence service in the foreground.
"""

from __future__ import annotations

import typer

from tabsync.cli.utils import DatabaseOption, RegistryOption, console, make_runtime
from tabsync.core.scheduling.cadence import CadenceService


def serve(
    interval: float = typer.Option(60.0, "--interval", help="Tick interval in seconds"),
    database: str | None = DatabaseOption,
    registry: str | None = RegistryOption,
) -> None:
    """Fire due operations on the reference cadences until interrupted."""
    runtime = make_runtime(database, registry)
    service = CadenceService(runtime.dispatcher())
    service.start(interval_seconds=interval)
    console.print(f"[green]Cadence service running[/green] (tick every {interval:g}s, Ctrl+C to stop)")
    try:
        while not service.backend.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()
        runtime.conn.close()
