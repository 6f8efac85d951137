"""Unit tests for the YAML config loader and env var resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from livesync.config.defaults import load_defaults, merge_configs
from livesync.config.loader import load_engine_config, load_yaml, resolve_env_vars
from livesync.config.models import EngineConfig, TransportMode

EXAMPLE_CONFIG = (
    Path(__file__).resolve().parents[2] / "examples" / "engine-config.yaml"
)


class TestResolveEnvVars:
    def test_plain_string_unchanged(self):
        assert resolve_env_vars("hello") == "hello"

    def test_substitutes_env_var(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SB_URL", "https://x.supabase.co")
        assert resolve_env_vars("${SB_URL}") == "https://x.supabase.co"

    def test_default_when_var_missing(self):
        assert resolve_env_vars("${MISSING_VAR:-fallback}") == "fallback"

    def test_env_var_overrides_default(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PAGE", "50")
        assert resolve_env_vars("${PAGE:-500}") == "50"

    def test_missing_var_no_default_raises(self):
        with pytest.raises(ValueError, match="UNDEFINED_VAR"):
            resolve_env_vars("${UNDEFINED_VAR}")

    def test_default_with_colons(self):
        result = resolve_env_vars("${MISSING:-http://localhost:54321}")
        assert result == "http://localhost:54321"

    def test_recursive(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TOPIC", "doubts:session-1")
        data = {"topics": ["${TOPIC}"], "nested": {"port": 8080}}
        assert resolve_env_vars(data) == {
            "topics": ["doubts:session-1"],
            "nested": {"port": 8080},
        }


class TestDefaults:
    def test_builtin_defaults_load(self):
        data = load_defaults()
        assert data["transport_mode"] == "memory"
        assert data["buffer"]["defer_window_seconds"] == 2.0

    def test_defaults_match_model_defaults(self):
        assert EngineConfig.model_validate(load_defaults()) == EngineConfig()

    def test_merge_is_deep_and_non_mutating(self):
        base = {"backoff": {"base_seconds": 0.25, "cap_seconds": 30.0}}
        merged = merge_configs(base, {"backoff": {"cap_seconds": 5.0}})
        assert merged == {"backoff": {"base_seconds": 0.25, "cap_seconds": 5.0}}
        assert base["backoff"]["cap_seconds"] == 30.0

    def test_user_yaml_overrides_defaults(self, tmp_path: Path):
        path = tmp_path / "engine.yaml"
        path.write_text("resync:\n  page_size: 10\n")
        cfg = load_engine_config(path)
        assert cfg.resync.page_size == 10
        assert cfg.resync.fetch_timeout_seconds == 10.0


class TestLoadYaml:
    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "absent.yaml")

    def test_empty_file_is_empty_mapping(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_non_mapping_raises(self, tmp_path: Path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(TypeError, match="mapping"):
            load_yaml(path)

    def test_parse_error_reports_line(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("engine_id: [unclosed\n")
        with pytest.raises(ValueError, match="line"):
            load_yaml(path)


class TestLoadEngineConfig:
    def test_defaults_when_no_path(self):
        cfg = load_engine_config()
        assert cfg.engine_id == "livesync"
        assert cfg.transport_mode == TransportMode.MEMORY

    def test_loads_from_yaml(self, tmp_path: Path):
        path = tmp_path / "engine.yaml"
        path.write_text("engine_id: lab\ntopics: [doubts:session-9]\n")
        cfg = load_engine_config(path)
        assert cfg.engine_id == "lab"
        assert cfg.topics == ["doubts:session-9"]
        # non-overridden defaults preserved
        assert cfg.notifier.callback_timeout_seconds == 5.0

    def test_invalid_config_mentions_source(self, tmp_path: Path):
        path = tmp_path / "engine.yaml"
        path.write_text("transport_mode: supabase\n")
        with pytest.raises(ValueError, match="Invalid engine config"):
            load_engine_config(path)

    def test_example_config_loads_with_defaults(self):
        cfg = load_engine_config(EXAMPLE_CONFIG)
        assert cfg.engine_id == "classroom"
        assert cfg.transport_mode == TransportMode.SUPABASE
        assert cfg.supabase is not None
        assert cfg.supabase.url == "http://localhost:54321"
        assert len(cfg.topics) == 3

    def test_example_config_env_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SUPABASE_URL", "https://prod.supabase.co")
        monkeypatch.setenv("LIVESYNC_TRANSPORT", "memory")
        cfg = load_engine_config(EXAMPLE_CONFIG)
        assert cfg.transport_mode == TransportMode.MEMORY
        assert cfg.supabase is not None
        assert cfg.supabase.rest_url == "https://prod.supabase.co/rest/v1"
