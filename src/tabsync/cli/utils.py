"""
CLI utility helpers — runtime wiring and output formatting.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from tabsync.core.errors import TabsyncError
from tabsync.core.logging import configure_logging
from tabsync.core.scheduling.dispatcher import SyncDispatcher
from tabsync.core.scheduling.lock_manager import LockManager
from tabsync.core.scheduling.registry import ScopeRegistry
from tabsync.core.settings import TabsyncSettings, load_settings
from tabsync.core.sqlite_conn import SqliteConnection
from tabsync.store.workbook import SqliteWorkbook

console = Console()
err_console = Console(stderr=True)

DatabaseOption = typer.Option(None, "--database", "-d", help="SQLite workbook path")
RegistryOption = typer.Option(None, "--registry", "-r", help="Scope registry YAML")
JsonOption = typer.Option(False, "--json", help="Emit JSON")


@dataclass
class Runtime:
    """Everything a command needs, wired from settings."""

    settings: TabsyncSettings
    conn: SqliteConnection
    workbook: SqliteWorkbook
    locks: LockManager
    registry: ScopeRegistry | None = None

    def dispatcher(self) -> SyncDispatcher:
        if self.registry is None:
            raise TabsyncError("No scope registry loaded")
        return SyncDispatcher(self.registry, self.workbook, self.locks, self.settings)


def make_runtime(
    database: str | None = None,
    registry: str | None = None,
    *,
    load_registry: bool = True,
) -> Runtime:
    """Open the workbook, resolve settings and load the scope registry.

    Settings come from the environment first (to find the database), then
    from the workbook's settings sheet, then from command-line options.
    """
    try:
        env = TabsyncSettings()
    except ValueError as e:
        fail(f"Invalid configuration: {e}")
    conn = SqliteConnection(database or env.database_path)
    workbook = SqliteWorkbook(conn)
    try:
        settings = load_settings(workbook, database_path=database, registry_path=registry)
        configure_logging(settings.log_level, json_format=settings.json_logs)
        locks = LockManager(conn, ttl_seconds=settings.lock_ttl_seconds)
        scopes = ScopeRegistry.from_file(settings.registry_path) if load_registry else None
    except TabsyncError as e:
        fail(e.message)
    return Runtime(settings=settings, conn=conn, workbook=workbook, locks=locks, registry=scopes)


# ── Output helpers ───────────────────────────────────────────────────────


def fail(message: str, code: int = 1) -> NoReturn:
    """Print an error and exit non-zero."""
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_items(items: list, *, as_json: bool = False, title: str = "") -> None:
    """Render a list of dataclasses/dicts as a table or JSON."""
    if as_json:
        console.print_json(json.dumps([_to_dict(i) for i in items], default=str))
        return
    if not items:
        console.print("[dim]No items.[/dim]")
        return
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        table.add_row(*(str(v) for v in _to_dict(item).values()))
    console.print(table)


def output_dict(data: dict[str, Any], *, as_json: bool = False, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
