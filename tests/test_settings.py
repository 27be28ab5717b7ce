"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from writeflow.config.settings import (
    AISettings,
    ContentSettings,
    LoggingSettings,
    Settings,
    ToolLoopSettings,
    get_settings,
)


class TestAISettings:
    def test_defaults(self) -> None:
        s = AISettings()
        assert s.model is None
        assert s.provider is None
        assert s.base_url is None
        assert s.offline is False
        assert s.deepseek_api_key == ""

    def test_reads_unprefixed_env(self, monkeypatch) -> None:
        monkeypatch.setenv("AI_MODEL", "claude-3-haiku")
        monkeypatch.setenv("API_BASE_URL", "https://gw.example.com/v1")
        monkeypatch.setenv("WRITEFLOW_AI_OFFLINE", "true")
        s = AISettings()
        assert s.model == "claude-3-haiku"
        assert s.base_url == "https://gw.example.com/v1"
        assert s.offline is True

    def test_provider_normalized(self, monkeypatch) -> None:
        monkeypatch.setenv("API_PROVIDER", "  Anthropic ")
        assert AISettings().provider == "anthropic"

    def test_invalid_provider_ignored(self, monkeypatch) -> None:
        monkeypatch.setenv("API_PROVIDER", "mistral")
        assert AISettings().provider is None

    def test_blank_model_is_none(self, monkeypatch) -> None:
        monkeypatch.setenv("AI_MODEL", "   ")
        assert AISettings().model is None

    def test_key_aliases(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAUDE_API_KEY", "sk-claude")
        monkeypatch.setenv("MOONSHOT_API_KEY", "sk-moon")
        monkeypatch.setenv("DASHSCOPE_API_KEY", "sk-dash")
        monkeypatch.setenv("ZHIPUAI_API_KEY", "sk-zhipu")
        s = AISettings()
        assert s.anthropic_api_key == "sk-claude"
        assert s.kimi_api_key == "sk-moon"
        assert s.qwen_api_key == "sk-dash"
        assert s.glm_api_key == "sk-zhipu"

    def test_populate_by_field_name(self) -> None:
        s = AISettings(deepseek_api_key="sk-ds", model="deepseek-chat")
        assert s.deepseek_api_key == "sk-ds"
        assert s.model == "deepseek-chat"


class TestToolLoopSettings:
    def test_defaults(self) -> None:
        s = ToolLoopSettings()
        assert s.max_iterations == 5
        assert s.failure_threshold == 2
        assert s.tool_timeout_s == 120.0
        assert s.max_retries_per_tool == 2
        assert s.require_confirmation is False

    def test_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("WRITEFLOW_TOOLS_MAX_ITERATIONS", "8")
        monkeypatch.setenv("WRITEFLOW_TOOLS_FAILURE_THRESHOLD", "3")
        s = ToolLoopSettings()
        assert s.max_iterations == 8
        assert s.failure_threshold == 3

    def test_zero_iterations_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ToolLoopSettings(max_iterations=0)

    def test_zero_failure_threshold_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ToolLoopSettings(failure_threshold=0)


class TestContentSettings:
    def test_defaults(self) -> None:
        s = ContentSettings()
        assert (s.lines, s.characters) == (20, 800)
        assert (s.code_block_lines, s.tool_output_lines, s.error_message_lines) == (10, 8, 5)

    def test_non_positive_threshold_rejected(self) -> None:
        with pytest.raises(ValidationError, match="code_block_lines must be > 0"):
            ContentSettings(code_block_lines=0)


class TestLoggingSettings:
    def test_level_uppercased(self) -> None:
        assert LoggingSettings(level="debug").level == "DEBUG"

    def test_invalid_level_rejected(self) -> None:
        with pytest.raises(ValidationError, match="WRITEFLOW_LOG_LEVEL must be one of"):
            LoggingSettings(level="verbose")


class TestRootSettings:
    def test_composes_groups(self) -> None:
        s = get_settings()
        assert isinstance(s, Settings)
        assert s.tools.max_iterations == 5
        assert s.streaming.flush_interval_ms == 8.0
        assert s.streaming.flush_max_pieces == 5
        assert s.session.ttl_hours == 24.0
