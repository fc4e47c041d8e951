"""Tests for TabsyncSettings and settings-sheet overrides."""

import pytest

from tabsync.core.errors import ConfigError, InvalidConfigError
from tabsync.core.settings import (
    SETTINGS_HEADER,
    SETTINGS_SHEET,
    TabsyncSettings,
    load_settings,
    normalize_key,
    read_sheet_overrides,
)
from tabsync.store.workbook import MemoryWorkbook


def _settings_sheet(rows):
    workbook = MemoryWorkbook()
    workbook.ensure_sheet(SETTINGS_SHEET, SETTINGS_HEADER)
    workbook.append_rows(SETTINGS_SHEET, rows)
    return workbook


class TestDefaults:
    """Reference defaults."""

    def test_defaults(self):
        settings = TabsyncSettings(_env_file=None)
        assert settings.page_size == 100
        assert settings.throttle_ms == 1000
        assert settings.batch_size == 2000
        assert settings.max_retries == 3
        assert settings.backoff_base_seconds == 2.0
        assert settings.budget_seconds < settings.host_ceiling_seconds

    def test_derived_properties(self):
        settings = TabsyncSettings(throttle_ms=250, host_ceiling_seconds=400, _env_file=None)
        assert settings.throttle_seconds == 0.25
        assert settings.lock_ttl_seconds == 400

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("TABSYNC_PAGE_SIZE", "50")
        assert TabsyncSettings(_env_file=None).page_size == 50


class TestValidation:
    """Invalid configuration is rejected up front."""

    def test_budget_must_be_below_ceiling(self):
        with pytest.raises(ConfigError):
            load_settings(budget_seconds=400, host_ceiling_seconds=360)

    def test_page_size_must_be_positive(self):
        with pytest.raises(InvalidConfigError) as excinfo:
            load_settings(page_size=0)
        assert excinfo.value.key == "page_size"
        assert excinfo.value.value == 0
        assert isinstance(excinfo.value, ConfigError)


class TestSheetOverrides:
    """Bare keys on the settings sheet override env defaults."""

    def test_recognized_keys_applied(self):
        workbook = _settings_sheet([["Page Size", "50"], ["throttle_ms", "200"]])
        settings = load_settings(workbook)
        assert settings.page_size == 50
        assert settings.throttle_ms == 200

    def test_checkpoint_and_unknown_keys_ignored(self):
        workbook = _settings_sheet([
            ["season-2023.cursor", "'4"],
            ["favourite_colour", "green"],
            ["batch_size", ""],
        ])
        assert read_sheet_overrides(workbook) == {}

    def test_missing_sheet(self):
        assert read_sheet_overrides(MemoryWorkbook()) == {}

    def test_explicit_overrides_win(self):
        workbook = _settings_sheet([["page_size", "50"]])
        assert load_settings(workbook, page_size=25).page_size == 25

    def test_normalize_key(self):
        assert normalize_key(" Page-Size ") == "page_size"
