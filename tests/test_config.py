"""Tests for willow/config.py — YAML loading and ${ENV} expansion."""
import pytest
from willow.config import WillowConfig, load_config, _expand_env_vars


class TestExpandEnvVars:
    def test_expands_nested(self, monkeypatch):
        monkeypatch.setenv("WILLOW_TEST_TOKEN", "tok-123")
        raw = {"intake": {"access_token": "${WILLOW_TEST_TOKEN}"}, "list": ["a-${WILLOW_TEST_TOKEN}"]}
        assert _expand_env_vars(raw) == {"intake": {"access_token": "tok-123"}, "list": ["a-tok-123"]}

    def test_unknown_var_left_as_is(self, monkeypatch):
        monkeypatch.delenv("WILLOW_TEST_MISSING", raising=False)
        assert _expand_env_vars("${WILLOW_TEST_MISSING}") == "${WILLOW_TEST_MISSING}"

    def test_non_strings_untouched(self):
        assert _expand_env_vars({"port": 8000, "on": True}) == {"port": 8000, "on": True}


class TestLoadConfig:
    def test_loads_sections(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WILLOW_TEST_KEY", "sk-ant-from-env")
        path = tmp_path / "config.yaml"
        path.write_text(
            "server:\n"
            "  port: 9100\n"
            "models:\n"
            "  conversation: gpt-4o\n"
            "api_keys:\n"
            "  anthropic: ${WILLOW_TEST_KEY}\n"
            "intake:\n"
            "  api_base_url: http://care.example/api/v1\n"
            "  request_timeout: 15\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.server.port == 9100
        assert cfg.models.conversation == "gpt-4o"
        assert cfg.models.extraction == WillowConfig().models.extraction
        assert cfg.api_keys.anthropic == "sk-ant-from-env"
        assert cfg.intake.api_base_url == "http://care.example/api/v1"
        assert cfg.intake.request_timeout == 15.0
        assert cfg.generation.max_tokens == 1024

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == WillowConfig()

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")


class TestEnvFallback:
    def test_fallback_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("WILLOW_TEST_PORTLESS", raising=False)
        assert _expand_env_vars("${WILLOW_TEST_PORTLESS:-http://localhost:8000}") == "http://localhost:8000"

    def test_env_beats_fallback(self, monkeypatch):
        monkeypatch.setenv("WILLOW_TEST_URL", "http://care.example")
        assert _expand_env_vars("${WILLOW_TEST_URL:-http://localhost}/api/v1") == "http://care.example/api/v1"

    def test_empty_fallback(self, monkeypatch):
        monkeypatch.delenv("WILLOW_TEST_EMPTY", raising=False)
        assert _expand_env_vars("${WILLOW_TEST_EMPTY:-}") == ""
