"""
Unit tests for config.loaders module.

Tests cover:
- Path resolution (relative vs absolute)
- YAML loading with environment variable expansion
- Error handling (missing files, invalid YAML)
"""

import os

import pytest
import yaml

from voice_agent.config.loaders import (
    DEFAULT_CONFIG_PATH,
    expand_env_refs,
    load_yaml_with_env_expansion,
    resolve_config_path,
)
from voice_agent.errors import ConfigurationError


class TestResolveConfigPath:
    """Tests for resolve_config_path function."""

    def test_absolute_path_unchanged(self):
        abs_path = "/etc/voice-agent/prod.yaml"
        assert resolve_config_path(abs_path) == abs_path

    def test_relative_path_resolved(self):
        """Relative paths should be resolved relative to project root."""
        rel_path = "config/voice-agent.yaml"
        result = resolve_config_path(rel_path)

        assert os.path.isabs(result)
        assert result.endswith(rel_path)

    def test_default_config_ships_with_repo(self):
        result = resolve_config_path(DEFAULT_CONFIG_PATH)
        assert os.path.isfile(result)
        assert result.endswith(os.path.join("config", "voice-agent.yaml"))


class TestLoadYamlWithEnvExpansion:
    """Tests for load_yaml_with_env_expansion function."""

    def test_load_sections(self, tmp_path):
        config_file = tmp_path / "agent.yaml"
        config_file.write_text(
            """
tts:
  provider: elevenlabs
turn:
  silence_timeout_ms: 450
echo:
  similarity_enabled: false
""",
            encoding="utf-8",
        )

        result = load_yaml_with_env_expansion(str(config_file))

        assert result["tts"]["provider"] == "elevenlabs"
        assert result["turn"]["silence_timeout_ms"] == 450
        assert result["echo"]["similarity_enabled"] is False

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        """Should expand ${VAR} references before parsing."""
        monkeypatch.setenv("PUBLIC_HOST", "agent.example.com")
        monkeypatch.setenv("AGENT_PORT", "8080")
        monkeypatch.setenv("VOICE", "neha")

        config_file = tmp_path / "agent.yaml"
        config_file.write_text(
            """
server:
  host: ${PUBLIC_HOST}
  port: ${AGENT_PORT}
heypixa:
  voice: ${VOICE}
""",
            encoding="utf-8",
        )

        result = load_yaml_with_env_expansion(str(config_file))

        assert result["server"]["host"] == "agent.example.com"
        # YAML parser converts numeric strings to int
        assert result["server"]["port"] == 8080
        assert result["heypixa"]["voice"] == "neha"

    def test_missing_env_var_left_unchanged(self, tmp_path):
        config_file = tmp_path / "agent.yaml"
        config_file.write_text("session:\n  greeting: ${NONEXISTENT_GREETING}\n", encoding="utf-8")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result["session"]["greeting"] == "${NONEXISTENT_GREETING}"

    def test_devanagari_round_trips(self, tmp_path):
        config_file = tmp_path / "agent.yaml"
        config_file.write_text('llm:\n  fallback_reply: "माफ़ कीजिए, कृपया फिर से कहें।"\n', encoding="utf-8")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result["llm"]["fallback_reply"] == "माफ़ कीजिए, कृपया फिर से कहें।"

    def test_file_not_found_raises_error(self):
        with pytest.raises(FileNotFoundError) as exc_info:
            load_yaml_with_env_expansion("/nonexistent/path/voice-agent.yaml")

        assert "not found" in str(exc_info.value).lower()

    def test_invalid_yaml_raises_error(self, tmp_path):
        config_file = tmp_path / "invalid.yaml"
        # mismatched indentation
        config_file.write_text("tts: heypixa\n  voice: neha\n    top_p: 0.9\n", encoding="utf-8")

        with pytest.raises(yaml.YAMLError) as exc_info:
            load_yaml_with_env_expansion(str(config_file))

        assert "parsing" in str(exc_info.value).lower()

    def test_empty_file_returns_empty_dict(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        assert load_yaml_with_env_expansion(str(config_file)) == {}

    def test_top_level_must_be_a_mapping(self, tmp_path):
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- tts\n- llm\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_yaml_with_env_expansion(str(config_file))


class TestExpandEnvRefs:
    def test_default_used_when_unset_or_empty(self):
        env = {"EMPTY": ""}
        assert expand_env_refs("${CHECKPOINT:-V1}", env) == "V1"
        assert expand_env_refs("${EMPTY:-neha}", env) == "neha"
        assert expand_env_refs("${EMPTY}", env) == ""

    def test_set_value_wins_over_default(self):
        assert expand_env_refs("${CHECKPOINT:-V1}", {"CHECKPOINT": "V2"}) == "V2"

    def test_bare_dollar_is_left_alone(self):
        prompt = "Tickets cost $5; say $HOME literally"
        assert expand_env_refs(prompt, {"HOME": "/root"}) == prompt
