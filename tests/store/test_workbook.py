"""Tests for workbook backends and spreadsheet-style coercion."""

from datetime import datetime

import pytest

from tabsync.core.sqlite_conn import SqliteConnection
from tabsync.store.workbook import MemoryWorkbook, SqliteWorkbook, coerce_cell


class TestCoerceCell:
    """Ambient coercion mimics a spreadsheet."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("42", 42),
            ("-3", -3),
            ("2.5", 2.5),
            ("TRUE", True),
            ("false", False),
            ("'42", "42"),
            ("'true", "true"),
            ("hello", "hello"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_scalars(self, raw, expected):
        assert coerce_cell(raw) == expected

    def test_iso_date_becomes_datetime(self):
        assert coerce_cell("2024-03-01") == datetime(2024, 3, 1)

    def test_nested_values_become_json(self):
        assert coerce_cell({"b": 1, "a": [1, 2]}) == '{"a": [1, 2], "b": 1}'


@pytest.fixture(params=["memory", "sqlite"])
def any_workbook(request):
    if request.param == "memory":
        yield MemoryWorkbook()
        return
    conn = SqliteConnection(":memory:")
    yield SqliteWorkbook(conn)
    conn.close()


class TestWorkbookContract:
    """Both backends behave the same."""

    def test_ensure_sheet_writes_header_once(self, any_workbook):
        any_workbook.ensure_sheet("Data", ["a", "b"])
        any_workbook.ensure_sheet("Data", ["x", "y"])
        assert any_workbook.read_range("Data", 1, 1, 1, 2) == [["a", "b"]]
        assert "Data" in any_workbook.sheet_names()

    def test_write_and_read_range(self, any_workbook):
        any_workbook.ensure_sheet("Data", ["a", "b"])
        any_workbook.write_range("Data", 2, 1, [["1", "x"], ["'2", None]])
        assert any_workbook.read_range("Data", 2, 1, 2, 2) == [[1, "x"], ["2", ""]]
        assert any_workbook.last_row("Data") == 3

    def test_blank_cells_read_as_empty(self, any_workbook):
        assert any_workbook.read_range("Nowhere", 5, 1, 1, 3) == [["", "", ""]]

    def test_append_rows_returns_first_row(self, any_workbook):
        any_workbook.ensure_sheet("Log", ["msg"])
        assert any_workbook.append_rows("Log", [["one"], ["two"]]) == 2
        assert any_workbook.append_rows("Log", [["three"]]) == 4

    def test_clear_rows(self, any_workbook):
        any_workbook.ensure_sheet("Data", ["a"])
        any_workbook.write_range("Data", 2, 1, [["x"], ["y"], ["z"]])
        assert any_workbook.clear_rows("Data", 3) == 2
        assert any_workbook.last_row("Data") == 2

    def test_dates_round_trip_as_datetimes(self, any_workbook):
        any_workbook.write_range("Data", 1, 1, [["2024-03-01T10:00:00+00:00"]])
        value = any_workbook.read_range("Data", 1, 1, 1, 1)[0][0]
        assert isinstance(value, datetime)
        assert value.year == 2024


class TestMemoryWorkbook:
    """Test-only helpers."""

    def test_write_calls_counted(self):
        workbook = MemoryWorkbook()
        workbook.write_range("Data", 1, 1, [["a"], ["b"]])
        assert workbook.write_calls == 1

    def test_coercion_can_be_disabled(self):
        workbook = MemoryWorkbook(coerce=False)
        workbook.write_range("Data", 1, 1, [["42"]])
        assert workbook.read_range("Data", 1, 1, 1, 1) == [["42"]]
