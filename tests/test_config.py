"""Tests for configuration loading."""
from pathlib import Path

import pytest

from controlplane.config import env_or, load_app_config, section


class TestLoadAppConfig:
    def test_none_means_defaults(self):
        assert load_app_config(None) == {}

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("commands:\n  timeout_ms: 1000\n", encoding="utf-8")
        assert load_app_config(str(path)) == {"commands": {"timeout_ms": 1000}}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_app_config(str(path)) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_app_config(str(tmp_path / "nope.yaml"))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_app_config(str(path))

    def test_shipped_config_loads(self):
        cfg = load_app_config(str(Path(__file__).resolve().parent.parent / "config.yaml"))
        assert set(cfg) == {"commands", "sessions", "sidecar", "proxy", "shutdown"}


class TestSection:
    def test_null_section(self):
        assert section({"sidecar": None}, "sidecar") == {}

    def test_bad_section(self):
        with pytest.raises(ValueError):
            section({"sidecar": "yes"}, "sidecar")


class TestEnvOr:
    def test_config_value_without_env(self, monkeypatch):
        monkeypatch.delenv("SOME_SETTING", raising=False)
        assert env_or({"key": 5}, "key", "SOME_SETTING", 1) == 5

    def test_env_converted_to_default_type(self, monkeypatch):
        monkeypatch.setenv("SOME_SETTING", "42")
        assert env_or({"key": 5}, "key", "SOME_SETTING", 1) == 42
        assert env_or({}, "key", "SOME_SETTING", 1.0) == 42.0
        assert env_or({}, "key", "SOME_SETTING", None) == "42"

    def test_env_bool(self, monkeypatch):
        monkeypatch.setenv("SOME_SETTING", "yes")
        assert env_or({}, "key", "SOME_SETTING", False) is True

    def test_empty_env_ignored(self, monkeypatch):
        monkeypatch.setenv("SOME_SETTING", "")
        assert env_or({"key": "cfg"}, "key", "SOME_SETTING", "default") == "cfg"
