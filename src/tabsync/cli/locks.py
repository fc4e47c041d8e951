"""
CLI: ``tabsync locks`` — inspect and release scope locks.
"""

from __future__ import annotations

import typer

from tabsync.cli.utils import DatabaseOption, JsonOption, console, make_runtime, output_items

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_locks(
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """List active (non-expired) locks."""
    runtime = make_runtime(database, load_registry=False)
    output_items(runtime.locks.list_active(), as_json=json_out, title="Active locks")


@app.command("release")
def release_lock(
    name: str = typer.Argument(None, help="Lock name, e.g. scope:season-2024"),
    all_locks: bool = typer.Option(False, "--all", help="Release every lock"),
    expired: bool = typer.Option(False, "--expired", help="Only remove expired locks"),
    database: str | None = DatabaseOption,
) -> None:
    """Force-release a lock left by a crashed invocation."""
    runtime = make_runtime(database, load_registry=False)
    if expired:
        count = runtime.locks.cleanup_expired()
    elif all_locks:
        count = runtime.locks.force_release()
    elif name:
        count = runtime.locks.force_release(name)
    else:
        raise typer.BadParameter("Give a lock name, --all or --expired")
    console.print(f"Released {count} lock(s)")
