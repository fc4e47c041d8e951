"""Scope registry loaded from a declarative YAML file.

Every sync scope (a season, a tournament, a reporting year) and the row
type its records are flattened into are declared in ``scopes.yaml``.
The dispatcher never invents scopes: it iterates the registry.

Example YAML::

    row_types:
      match:
        id_field: id
        columns:
          - id
          - date
          - home.name
          - away.name
          - score
        supplementary:
          endpoint: /match-stats
          id_param: match_ids
          key: match_id
          columns: [possession, shots]

    scopes:
      - id: season-2023
        kind: historical
        finalized: true
        endpoint: /matches
        params: {season: 2023}
        row_type: match
      - id: season-2024
        kind: current
        endpoint: /matches
        params: {season: 2024}
        row_type: match
        sheet: Matches 2024

Manifesto:
    Scopes are data, not code. Adding a season is a YAML edit that the
    loader validates up front, so a typo fails the invocation that loads
    it instead of a sync three hours later.

Tags:
    registry, scopes, yaml, declarative, config-driven, tabsync
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tabsync.core.errors import ConfigError
from tabsync.core.logging import get_logger
from tabsync.store.rows import RowSchema

logger = get_logger(__name__)


class ScopeKind(str, Enum):
    """Whether a scope can still receive new data."""

    HISTORICAL = "historical"
    CURRENT = "current"


class SupplementarySpec(BaseModel):
    """Per-batch secondary lookup merged into the primary rows."""

    model_config = ConfigDict(extra="forbid")

    endpoint: str = Field(..., min_length=1)
    id_param: str = Field(default="ids", min_length=1, description="Query parameter carrying the id list")
    key: str = Field(default="id", min_length=1, description="Field in supplementary items matching the primary id")
    columns: list[str] = Field(..., min_length=1)


class RowTypeSpec(BaseModel):
    """Column declaration shared by every scope of one row type."""

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    id_field: str = Field(default="id", min_length=1)
    columns: list[str] = Field(..., min_length=1)
    supplementary: SupplementarySpec | None = None

    @property
    def header(self) -> list[str]:
        """Primary columns, then supplementary columns prefixed by ``supp.``."""
        extra = [f"supp.{c}" for c in self.supplementary.columns] if self.supplementary else []
        return [*self.columns, *extra]

    def schema(self) -> RowSchema:
        return RowSchema(name=self.name, columns=tuple(self.header))


class SyncScope(BaseModel):
    """One independently resumable unit of synchronization."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    kind: ScopeKind = ScopeKind.CURRENT
    finalized: bool = False
    endpoint: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    row_type: str = Field(..., min_length=1)
    sheet: str = ""
    description: str = ""

    @model_validator(mode="after")
    def _default_sheet(self) -> SyncScope:
        if not self.sheet:
            self.sheet = self.id
        return self

    @property
    def historical(self) -> bool:
        return self.kind == ScopeKind.HISTORICAL

    @property
    def lock_name(self) -> str:
        return f"scope:{self.id}"


class RegistrySpec(BaseModel):
    """Root document of ``scopes.yaml``."""

    model_config = ConfigDict(extra="forbid")

    row_types: dict[str, RowTypeSpec] = Field(default_factory=dict)
    scopes: list[SyncScope] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> RegistrySpec:
        seen: set[str] = set()
        for scope in self.scopes:
            if scope.id in seen:
                raise ValueError(f"Duplicate scope id: {scope.id}")
            seen.add(scope.id)
            if scope.row_type not in self.row_types:
                raise ValueError(f"Scope {scope.id} references unknown row type {scope.row_type!r}")
        for name, row_type in self.row_types.items():
            row_type.name = name
        return self


class ScopeRegistry:
    """Ordered, validated collection of sync scopes."""

    def __init__(self, spec: RegistrySpec) -> None:
        self._spec = spec
        self._scopes = {scope.id: scope for scope in spec.scopes}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScopeRegistry:
        try:
            return cls(RegistrySpec.model_validate(data))
        except ValidationError as e:
            raise ConfigError(f"Invalid scope registry: {e}") from e

    @classmethod
    def from_yaml(cls, content: str) -> ScopeRegistry:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in scope registry: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Expected a mapping at registry root, got {type(data).__name__}")
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: str | Path) -> ScopeRegistry:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Scope registry not found: {path}")
        logger.debug("registry_load", path=str(path))
        registry = cls.from_yaml(path.read_text(encoding="utf-8"))
        logger.info("registry_loaded", path=str(path), scopes=len(registry))
        return registry

    def __len__(self) -> int:
        return len(self._scopes)

    def __iter__(self):
        return iter(self._scopes.values())

    def __contains__(self, scope_id: object) -> bool:
        return scope_id in self._scopes

    def get(self, scope_id: str) -> SyncScope:
        try:
            return self._scopes[scope_id]
        except KeyError:
            raise ConfigError(f"Unknown scope: {scope_id}") from None

    def all(self) -> list[SyncScope]:
        return list(self._scopes.values())

    def by_kind(self, kind: ScopeKind) -> list[SyncScope]:
        return [s for s in self._scopes.values() if s.kind == kind]

    def select(self, scope_ids: list[str] | None = None) -> list[SyncScope]:
        """Scopes named in *scope_ids* (registry order), or all of them."""
        if not scope_ids:
            return self.all()
        wanted = [self.get(scope_id) for scope_id in scope_ids]
        return sorted(wanted, key=lambda s: list(self._scopes).index(s.id))

    def row_type(self, name: str) -> RowTypeSpec:
        try:
            return self._spec.row_types[name]
        except KeyError:
            raise ConfigError(f"Unknown row type: {name}") from None

    def row_type_for(self, scope: SyncScope) -> RowTypeSpec:
        return self.row_type(scope.row_type)
