"""
Tests for entity_sync/config.py and entity_sync/paths.py.
"""

import json
import os

import pytest
from pydantic import ValidationError

from entity_sync.config import EngineSettings, load_settings, save_settings
from entity_sync.paths import DATA_DIR_ENV, resolve_data_dir, settings_path, world_book_path


class TestEngineSettings:
    def test_defaults(self):
        settings = EngineSettings()
        assert settings.auto_sync_enabled is True
        assert settings.external_sync_enabled is False
        assert settings.source_panel_id == "interaction"
        assert settings.world_book_name == "Entity Codex"
        assert (settings.debounce_wait_seconds, settings.debounce_max_wait_seconds) == (0.5, 3.0)

    def test_explicit_book_name(self):
        assert EngineSettings(target_world_book="Lore").world_book_name == "Lore"

    def test_window_validated(self):
        with pytest.raises(ValidationError):
            EngineSettings(debounce_wait_seconds=5, debounce_max_wait_seconds=1)


class TestLoadSave:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_settings(str(tmp_path / "settings.json")) == EngineSettings()

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "settings.json")
        save_settings(path, EngineSettings(auto_sync_enabled=False, auto_book_name="Codex"))
        loaded = load_settings(path)
        assert loaded.auto_sync_enabled is False
        assert loaded.world_book_name == "Codex"

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_settings(str(path)) == EngineSettings()

    def test_invalid_values_give_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"debounce_wait_seconds": -1}), encoding="utf-8")
        assert load_settings(str(path)) == EngineSettings()

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"theme": "dark", "auto_sync_enabled": False}), encoding="utf-8")
        assert load_settings(str(path)).auto_sync_enabled is False


class TestPaths:
    def test_explicit_dir_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "env"))
        explicit = tmp_path / "explicit"
        assert resolve_data_dir(str(explicit)) == str(explicit)
        assert explicit.is_dir()

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "env"))
        assert resolve_data_dir() == str(tmp_path / "env")

    def test_layout(self, tmp_path):
        root = str(tmp_path)
        assert settings_path(root) == os.path.join(root, "settings.json")
        assert world_book_path(root) == os.path.join(root, "runtime", "world_book.db")
