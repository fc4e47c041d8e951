"""
Root Typer application for the tabsync CLI.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

import typer
from typer import Typer

from tabsync import __version__

app = Typer(
    name="tabsync",
    help="tabsync — resumable paginated sync from a remote API into a shared workbook.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("tabsync")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"tabsync {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """tabsync CLI — run sync operations, inspect scopes, locks and the log."""


# ── Sub-command registration ─────────────────────────────────────────────

from tabsync.cli import sync  # noqa: E402
from tabsync.cli.locks import app as locks_app  # noqa: E402
from tabsync.cli.serve import serve  # noqa: E402

app.command("run")(sync.run_operation)
app.command("status")(sync.status)
app.command("reset")(sync.reset)
app.command("scopes")(sync.scopes)
app.command("log")(sync.log)
app.command("serve")(serve)
app.add_typer(locks_app, name="locks", help="Scope lock inspection and recovery.")
