"""Tests for record flattening."""

import pytest

from tabsync.core.scheduling.registry import RowTypeSpec
from tabsync.execution.transform import RowTransformer, dig, to_cell

RECORD = {
    "id": 7,
    "home": {"name": "Lions", "players": [{"name": "Ada"}, {"name": "Bo"}]},
    "tags": ["derby", "night"],
}


class TestDig:
    """Dotted-path lookup."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("id", 7),
            ("home.name", "Lions"),
            ("home.players.1.name", "Bo"),
            ("home.players.-1.name", "Bo"),
            ("home.players.5.name", None),
            ("away.name", None),
            ("id.value", None),
            ("", RECORD),
        ],
    )
    def test_paths(self, path, expected):
        assert dig(RECORD, path) == expected

    def test_default(self):
        assert dig(RECORD, "away", default="n/a") == "n/a"


class TestToCell:
    """Cell values."""

    def test_none_is_blank(self):
        assert to_cell(None) == ""

    def test_nested_values_are_json(self):
        assert to_cell({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
        assert to_cell(["x", 1]) == '["x", 1]'

    def test_scalars_pass_through(self):
        assert to_cell(0) == 0
        assert to_cell(False) is False


class TestRowTransformer:
    """Fixed-width rows with merged supplementary columns."""

    @pytest.fixture
    def row_type(self):
        return RowTypeSpec.model_validate(
            {
                "name": "match",
                "columns": ["id", "home.name", "away.name", "tags"],
                "supplementary": {"endpoint": "/stats", "key": "match_id", "columns": ["possession", "shots"]},
            }
        )

    def test_header_and_width(self, row_type):
        transformer = RowTransformer(row_type)
        assert transformer.header == ["id", "home.name", "away.name", "tags", "supp.possession", "supp.shots"]
        assert transformer.width == 6

    def test_missing_values_become_blanks(self, row_type):
        rows = RowTransformer(row_type).transform([RECORD])
        assert rows == [[7, "Lions", "", '["derby", "night"]', "", ""]]

    def test_supplementary_merge_uses_declared_order(self, row_type):
        supplements = {"7": {"match_id": 7, "shots": 12, "possession": 55}}
        rows = RowTransformer(row_type).transform([RECORD, {"id": 8}], supplements)
        assert rows[0][-2:] == [55, 12]
        assert rows[1] == [8, "", "", "", "", ""]

    def test_record_ids_distinct_in_order(self, row_type):
        records = [{"id": 3}, {"id": 1}, {"id": 3}, {"name": "no id"}]
        assert RowTransformer(row_type).record_ids(records) == ["3", "1"]

    def test_without_supplementary(self):
        row_type = RowTypeSpec(name="plain", columns=["id"])
        assert RowTransformer(row_type).transform([{"id": 1}, {"id": 2}]) == [[1], [2]]
