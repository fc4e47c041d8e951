"""
Record → row flattening.

A row type declares its columns as dotted paths into the API record
(``home.name``, ``venue.city``). Missing values become blanks, nested
values become JSON text, and supplementary columns are merged in by the
record's id so every row has the declared width.
"""

from __future__ import annotations

import json
from typing import Any

from tabsync.core.scheduling.registry import RowTypeSpec

_MISSING = object()


def dig(obj: Any, path: str, default: Any = None) -> Any:
    """Follow a dotted *path* through nested mappings (and list indices)."""
    if not path:
        return obj
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def to_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


class RowTransformer:
    """Flattens API records into fixed-width rows for one row type."""

    def __init__(self, row_type: RowTypeSpec) -> None:
        self.row_type = row_type

    @property
    def header(self) -> list[str]:
        return self.row_type.header

    @property
    def width(self) -> int:
        return len(self.header)

    def record_ids(self, records: list[dict[str, Any]]) -> list[str]:
        """Distinct primary ids in first-seen order."""
        ids: list[str] = []
        for record in records:
            value = dig(record, self.row_type.id_field)
            if value is not None and str(value) not in ids:
                ids.append(str(value))
        return ids

    def transform(
        self,
        records: list[dict[str, Any]],
        supplements: dict[str, dict[str, Any]] | None = None,
    ) -> list[list[Any]]:
        supplements = supplements or {}
        supp = self.row_type.supplementary
        rows = []
        for record in records:
            row = [to_cell(dig(record, column)) for column in self.row_type.columns]
            if supp is not None:
                match = supplements.get(str(dig(record, self.row_type.id_field)), {})
                row.extend(to_cell(dig(match, column)) for column in supp.columns)
            rows.append(row)
        return rows
