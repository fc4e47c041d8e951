"""
Centralized settings for tabsync.

Manifesto:
    Configuration should be explicit, validated, and environment-driven,
    but the people who operate a sync also live in the workbook. Settings
    therefore resolve from two places: ``TABSYNC_*`` environment variables
    (and ``.env``) and the bare keys of the ``Settings`` sheet, which wins
    because it is the human-visible configuration surface.

    - **Pydantic validation:** Type-checked at startup, not mid-run
    - **Extra ignore:** Unknown keys never cause startup failures
    - **Read-only:** The core never writes configuration back

Features:
    - **TabsyncSettings:** Every recognized option with its default
    - **load_settings():** Env + settings-sheet overlay
    - **Budget validation:** The wall-clock budget must stay below the
      host's hard execution ceiling

Examples:
    >>> from tabsync.core.settings import TabsyncSettings
    >>> TabsyncSettings().page_size
    100

Tags:
    settings, configuration, pydantic, environment, tabsync

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tabsync.core.errors import ConfigError, InvalidConfigError

if TYPE_CHECKING:
    from tabsync.core.protocols import Workbook

SETTINGS_SHEET = "Settings"
SETTINGS_HEADER = ["key", "value"]


class TabsyncSettings(BaseSettings):
    """tabsync configuration.

    All fields can be set via ``TABSYNC_*`` environment variables (e.g.
    ``TABSYNC_PAGE_SIZE=50``), a ``.env`` file, or a bare key in the
    ``Settings`` sheet.
    """

    model_config = SettingsConfigDict(
        env_prefix="TABSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Remote API ───────────────────────────────────────────────
    base_url: str = Field(default="", description="Base endpoint of the remote data API")
    auth_token: str = Field(default="", description="Bearer token for the remote data API")
    records_field: str = Field(default="data", description="Dotted path to the record list")
    total_field: str = Field(default="meta.total_count", description="Dotted path to the total record count")
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # ── Paging / throttling ──────────────────────────────────────
    page_size: int = Field(default=100, gt=0)
    throttle_ms: int = Field(default=1000, ge=0)
    batch_size: int = Field(default=2000, gt=0, description="Max records per scope per invocation")

    # ── Retry ────────────────────────────────────────────────────
    max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = Field(default=2.0, ge=0)

    # ── Wall-clock budget ────────────────────────────────────────
    budget_seconds: float = Field(default=330.0, gt=0)
    host_ceiling_seconds: float = Field(default=360.0, gt=0)

    # ── Locks ────────────────────────────────────────────────────
    interactive_lock_wait_ms: int = Field(default=30_000, ge=0)
    scheduled_lock_wait_ms: int = Field(default=1_000, ge=0)

    # ── Derived-view staleness ───────────────────────────────────
    stale_after_minutes: int = Field(default=180, gt=0)
    snapshot_max_age_hours: int = Field(default=20, gt=0)

    # ── Paths ────────────────────────────────────────────────────
    database_path: str = Field(default="data/tabsync.db")
    registry_path: str = Field(default="scopes.yaml")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json, console or auto")

    @model_validator(mode="after")
    def _validate_budget(self) -> TabsyncSettings:
        if self.budget_seconds >= self.host_ceiling_seconds:
            raise ValueError(
                f"budget_seconds ({self.budget_seconds}) must be strictly less than "
                f"host_ceiling_seconds ({self.host_ceiling_seconds})"
            )
        return self

    # ── Derived properties ───────────────────────────────────────

    @property
    def throttle_seconds(self) -> float:
        return self.throttle_ms / 1000.0

    @property
    def lock_ttl_seconds(self) -> float:
        return self.host_ceiling_seconds

    @property
    def json_logs(self) -> bool | None:
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


def normalize_key(key: Any) -> str:
    """``"Page Size"`` → ``"page_size"``."""
    return re.sub(r"[\s\-]+", "_", str(key).strip()).lower()


def read_sheet_overrides(workbook: Workbook) -> dict[str, Any]:
    """Recognized bare keys from the ``Settings`` sheet.

    Namespaced checkpoint keys (``scope.key``), blank values and keys that
    are not settings fields are ignored.
    """
    if SETTINGS_SHEET not in workbook.sheet_names():
        return {}

    last = workbook.last_row(SETTINGS_SHEET)
    if last < 2:
        return {}

    known = set(TabsyncSettings.model_fields)
    overrides: dict[str, Any] = {}
    for key, value in workbook.read_range(SETTINGS_SHEET, 2, 1, last - 1, 2):
        if key in ("", None) or value in ("", None):
            continue
        if "." in str(key):
            continue
        name = normalize_key(key)
        if name in known:
            overrides[name] = value
    return overrides


def load_settings(workbook: Workbook | None = None, **overrides: Any) -> TabsyncSettings:
    """Resolve settings from env, then the settings sheet, then *overrides*."""
    values: dict[str, Any] = {}
    if workbook is not None:
        values.update(read_sheet_overrides(workbook))
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return TabsyncSettings(**values)
    except ValidationError as exc:
        first = exc.errors()[0]
        if first.get("loc"):
            key = str(first["loc"][0])
            raise InvalidConfigError(
                key, values.get(key), f"Invalid configuration for {key}: {first['msg']}"
            ) from exc
        raise ConfigError(f"Invalid tabsync configuration: {exc}", cause=exc) from exc


__all__ = [
    "SETTINGS_HEADER",
    "SETTINGS_SHEET",
    "TabsyncSettings",
    "load_settings",
    "normalize_key",
    "read_sheet_overrides",
]
