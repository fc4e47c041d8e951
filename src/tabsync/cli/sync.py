"""
CLI: sync commands — ``run``, ``status``, ``reset``, ``scopes``, ``log``.

Thin transport over :class:`~tabsync.core.scheduling.dispatcher.SyncDispatcher`.
Scheduled runs (the default) log failures and exit 0 so the host retries
on its next tick; ``--interactive`` surfaces them with a non-zero exit.
"""

from __future__ import annotations

import asyncio

import typer

from tabsync.cli.utils import (
    DatabaseOption,
    JsonOption,
    RegistryOption,
    console,
    fail,
    make_runtime,
    output_dict,
    output_items,
)
from tabsync.core.context import Trigger
from tabsync.core.errors import TabsyncError
from tabsync.core.scheduling.policy import SyncOperation
from tabsync.store.oplog import read_log


def run_operation(
    operation: SyncOperation = typer.Argument(..., help="Operation to run"),
    scope: list[str] = typer.Option(None, "--scope", "-s", help="Limit to these scope ids"),
    interactive: bool = typer.Option(
        False, "--interactive", "-i", help="Wait longer for locks and fail loudly"
    ),
    database: str | None = DatabaseOption,
    registry: str | None = RegistryOption,
    json_out: bool = JsonOption,
) -> None:
    """Run a sync operation (continue, refresh, discover, snapshot, reconcile, reset)."""
    runtime = make_runtime(database, registry)
    trigger = Trigger.INTERACTIVE if interactive else Trigger.SCHEDULED
    try:
        report = asyncio.run(runtime.dispatcher().run(operation, trigger, scope or None))
    except TabsyncError as e:
        fail(e.message)

    if json_out:
        output_dict(report.to_dict(), as_json=True)
        return
    output_items(report.results, title=f"{report.operation} ({report.trigger})")
    if report.errors:
        console.print(f"[yellow]{len(report.errors)} scope(s) failed; see the Log sheet.[/yellow]")


def status(
    database: str | None = DatabaseOption,
    registry: str | None = RegistryOption,
    json_out: bool = JsonOption,
) -> None:
    """Show per-scope sync state."""
    runtime = make_runtime(database, registry)
    output_items(runtime.dispatcher().status(), as_json=json_out, title="Scopes")


def reset(
    scope_id: str = typer.Argument(..., help="Scope to reset"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    database: str | None = DatabaseOption,
    registry: str | None = RegistryOption,
) -> None:
    """Reset a scope's checkpoint so the next continue starts from page 1."""
    runtime = make_runtime(database, registry)
    if not yes:
        typer.confirm(f"Reset checkpoint for {scope_id}?", abort=True)
    try:
        asyncio.run(runtime.dispatcher().reset(scope_id))
    except TabsyncError as e:
        fail(e.message)
    console.print(f"[green]Reset[/green] {scope_id}")


def scopes(
    database: str | None = DatabaseOption,
    registry: str | None = RegistryOption,
    json_out: bool = JsonOption,
) -> None:
    """List registered scopes."""
    runtime = make_runtime(database, registry)
    items = [
        {
            "id": s.id,
            "kind": s.kind.value,
            "finalized": s.finalized,
            "endpoint": s.endpoint,
            "row_type": s.row_type,
            "sheet": s.sheet,
        }
        for s in runtime.registry
    ]
    output_items(items, as_json=json_out, title="Registered scopes")


def log(
    limit: int = typer.Option(50, "--limit", "-n", help="Number of entries"),
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """Show the most recent operational log entries."""
    runtime = make_runtime(database, load_registry=False)
    output_items(read_log(runtime.workbook, limit=limit), as_json=json_out, title="Log")
