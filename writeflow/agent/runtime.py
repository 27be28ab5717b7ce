"""Process-level assembly: settings → logging → tools → session → coordinator."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

from writeflow.agent.coordinator import WriteFlowCoordinator
from writeflow.agent.interactive import ConfirmCallback, FailureCallback
from writeflow.config.settings import Settings, get_settings
from writeflow.infra.logging import setup_logging
from writeflow.providers.factory import ProviderFactory
from writeflow.session.context import SessionContext
from writeflow.tools.builtins import register_builtins
from writeflow.tools.permissions import AskCallback, PermissionMode
from writeflow.tools.registry import ToolRegistry

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    coordinator: WriteFlowCoordinator
    session: SessionContext
    factory: ProviderFactory
    registry: ToolRegistry


@asynccontextmanager
async def open_runtime(
    settings: Settings | None = None,
    *,
    mode: PermissionMode = PermissionMode.default,
    ask: AskCallback | None = None,
    confirm: ConfirmCallback | None = None,
    on_failure: FailureCallback | None = None,
    session_id: str | None = None,
) -> AsyncIterator[Runtime]:
    """Build a ready coordinator for one session; release adapters and grants on exit."""
    settings = settings or get_settings()
    setup_logging(
        json_output=settings.logging.json_output, log_level=settings.logging.level,
    )

    workspace_dir = settings.session.workspace_dir.resolve()
    registry = ToolRegistry()
    register_builtins(registry, workspace_dir)

    session = SessionContext.create(
        workspace_dir, session_id=session_id, mode=mode, ask=ask,
    )
    factory = ProviderFactory(streaming=settings.streaming)
    coordinator = WriteFlowCoordinator(
        settings, factory=factory, registry=registry, session=session,
        confirm=confirm, on_failure=on_failure,
    )
    logger.info(
        "runtime_ready",
        workspace_dir=str(workspace_dir),
        tools=len(registry.list_tools()),
        offline=settings.ai.offline,
    )
    try:
        yield Runtime(
            settings=settings,
            coordinator=coordinator,
            session=session,
            factory=factory,
            registry=registry,
        )
    finally:
        await factory.aclose()
        session.dispose()
        logger.info("runtime_closed")
