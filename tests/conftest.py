"""Shared pytest fixtures for WriteFlow tests.

Every test runs with provider/model environment variables cleared so a
developer's shell (or a stray .env) cannot change routing decisions.
"""

from __future__ import annotations

import pytest

from writeflow.session.context import SessionContext
from writeflow.tools.builtins import register_builtins
from writeflow.tools.registry import ToolRegistry

_ENV_VARS = (
    "AI_MODEL",
    "API_PROVIDER",
    "API_BASE_URL",
    "WRITEFLOW_AI_OFFLINE",
    "ANTHROPIC_API_KEY",
    "CLAUDE_API_KEY",
    "DEEPSEEK_API_KEY",
    "OPENAI_API_KEY",
    "KIMI_API_KEY",
    "MOONSHOT_API_KEY",
    "QWEN_API_KEY",
    "DASHSCOPE_API_KEY",
    "GLM_API_KEY",
    "ZHIPUAI_API_KEY",
    "WRITEFLOW_TOOLS_MAX_ITERATIONS",
    "WRITEFLOW_TOOLS_FAILURE_THRESHOLD",
    "WRITEFLOW_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def workspace(tmp_path):
    """Isolated workspace with one draft file."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "draft.md").write_text("# Draft\n\nOnce upon a time.\n", encoding="utf-8")
    return ws


@pytest.fixture()
def session(workspace):
    ctx = SessionContext.create(workspace, session_id="test-session")
    yield ctx
    ctx.dispose()


@pytest.fixture()
def registry(workspace):
    reg = ToolRegistry()
    register_builtins(reg, workspace)
    return reg
