"""Tests for the ``tabsync`` CLI against a real SQLite workbook."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from tabsync.cli.app import app
from tabsync.cli.utils import Runtime
from tabsync.core.logging import configure_logging
from tabsync.core.scheduling.dispatcher import SyncDispatcher
from tabsync.core.scheduling.lock_manager import LockManager
from tabsync.core.sqlite_conn import SqliteConnection

runner = CliRunner()

REGISTRY_YAML = """
row_types:
  match:
    columns: [id, home.name]
scopes:
  - id: season-2023
    kind: historical
    finalized: true
    endpoint: /matches
    params: {season: 2023}
    row_type: match
  - id: season-2024
    endpoint: /matches
    params: {season: 2024}
    row_type: match
"""


async def _no_sleep(delay):
    return None


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Isolated cwd, database and registry; returns the common options."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TABSYNC_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("TABSYNC_BASE_URL", "https://api.test")
    registry = tmp_path / "scopes.yaml"
    registry.write_text(REGISTRY_YAML)
    database = tmp_path / "workbook.db"
    yield {"database": str(database), "args": ["--database", str(database), "--registry", str(registry)]}
    # CliRunner closes the streams logging was bound to
    configure_logging("WARNING")


@pytest.fixture
def fake_dispatcher(fake_api):
    """Route the CLI's dispatcher through the fake API."""

    def _dispatcher(runtime):
        return SyncDispatcher(
            runtime.registry,
            runtime.workbook,
            runtime.locks,
            runtime.settings,
            transport=fake_api.transport,
            sleep=_no_sleep,
        )

    with patch.object(Runtime, "dispatcher", _dispatcher):
        yield fake_api


def _json(result):
    return json.loads(result.output)


class TestRoot:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "tabsync" in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "run" in result.output


class TestScopesAndStatus:
    """Read-only commands."""

    def test_scopes(self, cli_env):
        result = runner.invoke(app, ["scopes", *cli_env["args"], "--json"])
        assert result.exit_code == 0
        assert [s["id"] for s in _json(result)] == ["season-2023", "season-2024"]

    def test_status_fresh_database(self, cli_env):
        result = runner.invoke(app, ["status", *cli_env["args"], "--json"])
        assert result.exit_code == 0
        rows = _json(result)
        assert [r["state"] for r in rows] == ["NOT_STARTED", "NOT_STARTED"]
        assert all(r["stale"] for r in rows)

    def test_missing_registry(self, cli_env, tmp_path):
        result = runner.invoke(
            app, ["scopes", "--database", cli_env["database"], "--registry", str(tmp_path / "nope.yaml")]
        )
        assert result.exit_code == 1


class TestRun:
    """``tabsync run <operation>``."""

    def test_continue_completes_scopes(self, cli_env, fake_dispatcher):
        result = runner.invoke(app, ["run", "continue", *cli_env["args"], "--json"])

        assert result.exit_code == 0
        report = _json(result)
        assert [r["status"] for r in report["results"]] == ["complete", "complete"]

        status = _json(runner.invoke(app, ["status", *cli_env["args"], "--json"]))
        assert [s["rows"] for s in status] == [250, 250]

    def test_scope_filter(self, cli_env, fake_dispatcher):
        result = runner.invoke(app, ["run", "continue", "-s", "season-2024", *cli_env["args"], "--json"])
        assert [r["scope_id"] for r in _json(result)["results"]] == ["season-2024"]

    def test_scheduled_failure_exits_zero(self, cli_env, fake_dispatcher):
        fake_dispatcher.fail_page(0, 404)
        result = runner.invoke(app, ["run", "continue", "-s", "season-2024", *cli_env["args"]])
        assert result.exit_code == 0
        assert "failed" in result.output

    def test_interactive_failure_exits_non_zero(self, cli_env, fake_dispatcher):
        fake_dispatcher.fail_page(0, 404)
        result = runner.invoke(app, ["run", "continue", "-s", "season-2024", "-i", *cli_env["args"]])
        assert result.exit_code == 1

    def test_snapshot_needs_no_network(self, cli_env):
        result = runner.invoke(app, ["run", "snapshot", *cli_env["args"], "--json"])
        assert result.exit_code == 0
        assert {r["status"] for r in _json(result)["results"]} == {"captured"}

    def test_unusable_base_url_fails_before_any_request(self, cli_env, monkeypatch):
        monkeypatch.setenv("TABSYNC_BASE_URL", "")
        result = runner.invoke(app, ["run", "continue", "-s", "season-2024", *cli_env["args"]])
        assert result.exit_code == 1

    def test_unknown_operation(self, cli_env):
        result = runner.invoke(app, ["run", "teleport", *cli_env["args"]])
        assert result.exit_code == 2


class TestReset:
    def test_reset_with_yes(self, cli_env):
        result = runner.invoke(app, ["reset", "season-2024", "-y", *cli_env["args"]])
        assert result.exit_code == 0
        assert "Reset" in result.output

        log = _json(runner.invoke(app, ["log", "--database", cli_env["database"], "--json"]))
        assert log[-1]["message"] == "Checkpoint reset; next continue starts from page 1"

    def test_reset_declined(self, cli_env):
        result = runner.invoke(app, ["reset", "season-2024", *cli_env["args"]], input="n\n")
        assert result.exit_code == 1

    def test_reset_unknown_scope(self, cli_env):
        result = runner.invoke(app, ["reset", "season-1999", "-y", *cli_env["args"]])
        assert result.exit_code == 1


class TestLocks:
    """``tabsync locks``."""

    def _hold(self, database, name="scope:season-2024"):
        conn = SqliteConnection(database)
        LockManager(conn).try_acquire(name, holder="stuck")
        conn.close()

    def test_list_empty(self, cli_env):
        result = runner.invoke(app, ["locks", "list", "--database", cli_env["database"], "--json"])
        assert result.exit_code == 0
        assert _json(result) == []

    def test_list_and_release(self, cli_env):
        self._hold(cli_env["database"])

        listed = _json(runner.invoke(app, ["locks", "list", "--database", cli_env["database"], "--json"]))
        assert [(lock["name"], lock["holder"]) for lock in listed] == [("scope:season-2024", "stuck")]

        result = runner.invoke(app, ["locks", "release", "scope:season-2024", "--database", cli_env["database"]])
        assert result.exit_code == 0
        assert "Released 1 lock(s)" in result.output

    def test_release_all(self, cli_env):
        self._hold(cli_env["database"], "scope:a")
        self._hold(cli_env["database"], "scope:b")
        result = runner.invoke(app, ["locks", "release", "--all", "--database", cli_env["database"]])
        assert "Released 2 lock(s)" in result.output

    def test_release_needs_a_target(self, cli_env):
        result = runner.invoke(app, ["locks", "release", "--database", cli_env["database"]])
        assert result.exit_code == 2

    def test_held_lock_skips_scheduled_run(self, cli_env, fake_dispatcher):
        self._hold(cli_env["database"])
        result = runner.invoke(app, ["run", "continue", "-s", "season-2024", *cli_env["args"], "--json"])
        assert _json(result)["results"][0]["reason"] == "busy"
