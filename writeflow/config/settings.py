from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import so every BaseSettings subclass sees the env vars
load_dotenv()

VALID_PROVIDERS = frozenset({"anthropic", "deepseek", "openai", "kimi", "openai_compatible"})


class AISettings(BaseSettings):
    """Provider/model selection and credentials.

    Unprefixed env vars (AI_MODEL, API_PROVIDER, API_BASE_URL, *_API_KEY)
    to stay compatible with existing WriteFlow shells.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)

    model: str | None = Field(None, validation_alias="AI_MODEL")
    provider: str | None = Field(None, validation_alias="API_PROVIDER")
    base_url: str | None = Field(None, validation_alias="API_BASE_URL")
    offline: bool = Field(False, validation_alias="WRITEFLOW_AI_OFFLINE")

    anthropic_api_key: str = Field(
        "", validation_alias=AliasChoices("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
    )
    deepseek_api_key: str = Field("", validation_alias="DEEPSEEK_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    kimi_api_key: str = Field(
        "", validation_alias=AliasChoices("KIMI_API_KEY", "MOONSHOT_API_KEY"),
    )
    qwen_api_key: str = Field(
        "", validation_alias=AliasChoices("QWEN_API_KEY", "DASHSCOPE_API_KEY"),
    )
    glm_api_key: str = Field(
        "", validation_alias=AliasChoices("GLM_API_KEY", "ZHIPUAI_API_KEY"),
    )

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, v: str | None) -> str | None:
        # Unknown API_PROVIDER values are ignored (fallback applies), not fatal
        if v is None:
            return None
        v = v.strip().lower()
        return v if v in VALID_PROVIDERS else None

    @field_validator("model", "base_url")
    @classmethod
    def _blank_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class ToolLoopSettings(BaseSettings):
    """Tool-calling loop bounds. Env vars prefixed with WRITEFLOW_TOOLS_."""

    model_config = SettingsConfigDict(env_prefix="WRITEFLOW_TOOLS_")

    max_iterations: int = Field(5, gt=0, le=50)
    failure_threshold: int = Field(2, gt=0)
    tool_timeout_s: float = Field(120.0, gt=0)
    max_retries_per_tool: int = Field(2, ge=0)
    require_confirmation: bool = False


class StreamingSettings(BaseSettings):
    """Delta batching and HTTP timeouts. Env vars prefixed with WRITEFLOW_STREAM_."""

    model_config = SettingsConfigDict(env_prefix="WRITEFLOW_STREAM_")

    flush_interval_ms: float = Field(8.0, ge=0)
    flush_max_pieces: int = Field(5, gt=0)
    request_timeout_s: float = Field(300.0, gt=0)
    connect_timeout_s: float = Field(10.0, gt=0)


class ContentSettings(BaseSettings):
    """Auto-collapse thresholds. Env vars prefixed with WRITEFLOW_CONTENT_."""

    model_config = SettingsConfigDict(env_prefix="WRITEFLOW_CONTENT_")

    lines: int = 20
    characters: int = 800
    code_block_lines: int = 10
    tool_output_lines: int = 8
    error_message_lines: int = 5

    @model_validator(mode="after")
    def _validate(self) -> Self:
        for name in ("lines", "characters", "code_block_lines",
                     "tool_output_lines", "error_message_lines"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")
        return self


class SessionSettings(BaseSettings):
    """Session lifetime settings. Env vars prefixed with WRITEFLOW_SESSION_."""

    model_config = SettingsConfigDict(env_prefix="WRITEFLOW_SESSION_")

    ttl_hours: float = Field(24.0, gt=0)
    workspace_dir: Path = Path(".")


class LoggingSettings(BaseSettings):
    """Env vars prefixed with WRITEFLOW_LOG_."""

    model_config = SettingsConfigDict(env_prefix="WRITEFLOW_LOG_")

    json_output: bool = False
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            msg = f"WRITEFLOW_LOG_LEVEL must be one of {sorted(allowed)} (got '{v}')"
            raise ValueError(msg)
        return v.upper()


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    ai: AISettings = Field(default_factory=AISettings)
    tools: ToolLoopSettings = Field(default_factory=ToolLoopSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    content: ContentSettings = Field(default_factory=ContentSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
