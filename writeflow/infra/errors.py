"""Custom exception hierarchy for WriteFlow.

All application-specific exceptions inherit from WriteFlowError,
which carries an error code that survives into AIResponse / tool results.
"""

from __future__ import annotations


class WriteFlowError(Exception):
    """Base exception for all WriteFlow errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ProviderError(WriteFlowError):
    """Errors in provider routing and LLM wire calls."""

    def __init__(self, message: str, *, code: str = "PROVIDER_ERROR") -> None:
        super().__init__(message, code=code)


class UnsupportedProviderError(ProviderError):
    """Provider id or model cannot be routed. Raised before any network call."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="UNSUPPORTED_PROVIDER")


class MissingAPIKeyError(ProviderError):
    """No API key configured for the resolved provider."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="MISSING_API_KEY")


class ProviderHTTPError(ProviderError):
    """Non-2xx HTTP status from a provider. Carries status and raw body."""

    def __init__(self, status: int, body: str, *, provider: str = "") -> None:
        prefix = f"{provider} API error" if provider else "API error"
        super().__init__(f"{prefix}: {status} - {body[:500]}", code="PROVIDER_HTTP_ERROR")
        self.status = status
        self.body = body


class ProviderTransportError(ProviderError):
    """Network-level failure (connect, read, TLS) talking to a provider."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSPORT_ERROR")


class StreamDecodeError(ProviderError):
    """Error event received inside an SSE stream."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STREAM_ERROR")


class ToolError(WriteFlowError):
    """Errors during tool lookup, argument parsing, or execution."""

    def __init__(self, message: str, *, code: str = "TOOL_ERROR") -> None:
        super().__init__(message, code=code)


class ToolArgumentError(ToolError):
    """Tool arguments could not be recovered by any repair stage."""

    def __init__(self, stage_errors: list[str]) -> None:
        detail = "; ".join(
            f"stage {i} ({err})" for i, err in enumerate(stage_errors, start=1)
        )
        super().__init__(f"Unable to parse tool arguments: {detail}", code="INVALID_ARGS")
        self.stage_errors = stage_errors


class PermissionDeniedError(ToolError):
    """Tool call rejected by the permission gate."""

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(message, code="PERMISSION_DENIED")


class ExecutionStateError(WriteFlowError):
    """Illegal state-machine transition (tool status or execution stage)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_TRANSITION")
