from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SystemMessage:
    """Informational notice emitted when a request starts."""

    message: str
    type: str = field(default="system", init=False)


@dataclass
class ProgressMessage:
    """Coarse lifecycle progress (connecting, tool round, finalizing)."""

    stage: str
    percent: int
    message: str = ""
    type: str = field(default="progress", init=False)


@dataclass
class CharacterDelta:
    """A batch of streamed response text."""

    text: str
    type: str = field(default="character_delta", init=False)


@dataclass
class AIResponseMessage:
    """Terminal message carrying the final content."""

    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="ai_response", init=False)


@dataclass
class ErrorMessage:
    """Failure notice. Always followed by an AIResponseMessage."""

    message: str
    type: str = field(default="error", init=False)


StreamMessage = (
    SystemMessage | ProgressMessage | CharacterDelta | AIResponseMessage | ErrorMessage
)
