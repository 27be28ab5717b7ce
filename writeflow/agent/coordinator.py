"""Request orchestration: enhance → route → stream or call → tool loop → post-process.

WriteFlowCoordinator.process_request() is the public entry point and never
raises: provider, routing and tool failures all come back as an AIResponse
whose content explains what went wrong.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import itertools
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from writeflow.agent.events import (
    AIResponseMessage,
    ErrorMessage,
    ProgressMessage,
    StreamMessage,
    SystemMessage,
)
from writeflow.agent.interactive import (
    ConfirmCallback,
    FailureCallback,
    InteractionOptions,
    InteractiveExecutionManager,
)
from writeflow.agent.models import (
    AIRequest,
    AIResponse,
    ConversationMessage,
    ProviderTurn,
    StreamingStats,
    TokenUsage,
    ToolCall,
)
from writeflow.agent.streaming import DeltaBatcher, StreamChannel
from writeflow.agent.task_guidance import task_order_advisory
from writeflow.config.settings import Settings
from writeflow.content.processor import ContentProcessor
from writeflow.infra.errors import WriteFlowError
from writeflow.providers.base import (
    ModelProfile,
    ProviderAdapter,
    ProviderId,
    calculate_cost,
)
from writeflow.providers.factory import (
    ProviderFactory,
    resolve_default_model,
    resolve_model_profile,
)
from writeflow.session.context import SessionContext
from writeflow.tools.executor import ToolExecutionResult, ToolExecutor, format_result
from writeflow.tools.registry import ToolRegistry

logger = structlog.get_logger()

OFFLINE_MODEL = "offline-mock"
TODO_WRITE_TOOL = "todo_write"
MARKER_RESULT_CHARS = 500

ERROR_HINT = (
    "Troubleshooting:\n"
    "- Check your network connection and any HTTP(S) proxy settings.\n"
    "- To work without network access: export WRITEFLOW_AI_OFFLINE=true\n"
    "- Verify API_PROVIDER, AI_MODEL and the matching *_API_KEY environment variable.\n"
    "- For a custom or self-hosted endpoint, set API_BASE_URL."
)

_OFFLINE_EXAMPLE_ARGS: dict[str, dict[str, Any]] = {
    "Read": {"file_path": "README.md"},
    "Glob": {"pattern": "**/*.md"},
    "Grep": {"pattern": "TODO"},
    "Bash": {"command": "ls"},
}


@dataclass
class _Transcript:
    """Accumulates the user-visible response text and mirrors it to the delta sink."""

    sink: Callable[[str], None] | None = None
    parts: list[str] = field(default_factory=list)

    def append(self, text: str, *, delivered: bool = False) -> None:
        if not text:
            return
        self.parts.append(text)
        if not delivered and self.sink is not None:
            self.sink(text)

    def text(self) -> str:
        return "".join(self.parts)


@dataclass
class _LoopOutcome:
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: list[ToolCall] = field(default_factory=list)
    results: list[ToolExecutionResult] = field(default_factory=list)
    stream_start: float | None = None


def should_stream(request: AIRequest, adapter: ProviderAdapter, tools_active: bool) -> bool:
    return request.stream and not (tools_active and not adapter.supports_streaming_tools)


class WriteFlowCoordinator:
    """Per-request state machine over providers, tools and content processing.

    Flow: ENHANCE → ROUTE → {STREAM | NONSTREAM} → TOOL_LOOP* → POSTPROCESS
    """

    def __init__(
        self,
        settings: Settings,
        *,
        factory: ProviderFactory | None = None,
        registry: ToolRegistry | None = None,
        session: SessionContext | None = None,
        content: ContentProcessor | None = None,
        confirm: ConfirmCallback | None = None,
        on_failure: FailureCallback | None = None,
    ) -> None:
        self._settings = settings
        self._confirm = confirm
        self._on_failure = on_failure
        self._factory = factory or ProviderFactory(streaming=settings.streaming)
        self._registry = registry or ToolRegistry()
        self._session = session
        self._executor = ToolExecutor(
            self._registry, session=session, timeout_s=settings.tools.tool_timeout_s,
        )
        self._interactive = InteractiveExecutionManager(
            self._executor, ttl_hours=settings.session.ttl_hours,
        )
        if session is not None and session.interactive is None:
            session.interactive = self._interactive
        self._content = content or ContentProcessor(settings.content)
        self._request_ids = itertools.count(1)

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def interactive(self) -> InteractiveExecutionManager:
        return self._interactive

    # ── Public entry points ──

    async def process_request(
        self, request: AIRequest, *, channel: StreamChannel | None = None
    ) -> AIResponse:
        response, _ = await self._run(request, channel)
        return response

    async def stream_request(self, request: AIRequest) -> AsyncIterator[StreamMessage]:
        """Yield system → progress → character deltas → progress → ai_response.

        On failure an error message precedes the final ai_response.
        """
        channel = StreamChannel(
            on_token=request.on_token,
            flush_interval_ms=self._settings.streaming.flush_interval_ms,
            max_pieces=self._settings.streaming.flush_max_pieces,
        )

        async def produce() -> None:
            try:
                channel.emit(SystemMessage(message="WriteFlow AI is processing your request"))
                channel.emit(ProgressMessage(stage="connecting", percent=10))
                response, error = await self._run(request, channel)
                if error is not None:
                    channel.emit(ErrorMessage(message=error))
                else:
                    channel.emit(ProgressMessage(stage="finalizing", percent=90))
                channel.emit(AIResponseMessage(
                    content=response.content, metadata=_response_metadata(response),
                ))
            finally:
                channel.close()

        task = asyncio.create_task(produce())
        try:
            async for message in channel:
                yield message
        finally:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def enhance_request(self, request: AIRequest) -> AIRequest:
        """Attach the task-order advisory to the system prompt when it applies."""
        if self._session is None:
            return request
        note = task_order_advisory(request.prompt, self._session.todos.get_todos())
        if note is None:
            return request
        logger.info("task_order_advisory_added")
        system_prompt = f"{request.system_prompt}\n\n{note}" if request.system_prompt else note
        return dataclasses.replace(request, system_prompt=system_prompt)

    # ── Orchestration ──

    async def _run(
        self, request: AIRequest, channel: StreamChannel | None
    ) -> tuple[AIResponse, str | None]:
        start = time.time()
        request_id = f"req_{next(self._request_ids)}_{int(start * 1000)}"
        session_id = request.session_id or (
            self._session.session_id if self._session is not None else None
        )

        batcher: DeltaBatcher | None = None
        if channel is not None:
            sink: Callable[[str], None] | None = channel.push_text
        elif request.on_token is not None:
            batcher = DeltaBatcher(
                request.on_token,
                flush_interval_ms=self._settings.streaming.flush_interval_ms,
                max_pieces=self._settings.streaming.flush_max_pieces,
            )
            sink = batcher.push
        else:
            sink = None
        transcript = _Transcript(sink=sink)

        with structlog.contextvars.bound_contextvars(
            request_id=request_id, session_id=session_id,
        ):
            try:
                request = self.enhance_request(request)
                if self._settings.ai.offline:
                    response = self._offline_response(request, transcript, start)
                else:
                    response = await self._dispatch(request, transcript, start)
                error = None
            except WriteFlowError as e:
                logger.error("request_failed", error=str(e), code=e.code)
                response, error = self._error_response(request, e, start), str(e)
            except Exception as e:
                logger.exception("request_failed_unexpectedly")
                response, error = self._error_response(request, e, start), str(e)
            finally:
                if batcher is not None:
                    batcher.flush()

            logger.info(
                "request_complete",
                model=response.model,
                duration_ms=round(response.duration * 1000),
                tool_interaction=response.has_tool_interaction,
                failed=error is not None,
            )
        return response, error

    async def _dispatch(
        self, request: AIRequest, transcript: _Transcript, start: float
    ) -> AIResponse:
        model = request.model or resolve_default_model(self._settings.ai)
        profile = resolve_model_profile(model, self._settings.ai)
        adapter = self._factory.get(profile.provider)

        tools = (
            self._registry.get_tools_schema(request.allowed_tools)
            if request.tools_enabled else []
        )
        streaming = should_stream(request, adapter, bool(tools))
        logger.info(
            "request_routed",
            model=model,
            provider=profile.provider.value,
            streaming=streaming,
            tools=len(tools),
        )

        conversation = [ConversationMessage(role="user", content=request.prompt)]
        outcome = await self._tool_loop(
            request, adapter, profile, conversation, tools or None, streaming, transcript,
        )
        end = time.time()

        content = transcript.text()
        streaming_stats = None
        if outcome.stream_start is not None:
            streaming_stats = StreamingStats(start_time=outcome.stream_start).finish(
                outcome.usage.output_tokens, end_time=end,
            )
        return AIResponse(
            content=content,
            model=outcome.model,
            content_blocks=(
                self._content.process(content)
                + self._content.create_tool_blocks(outcome.results)
            ),
            usage=outcome.usage,
            cost=calculate_cost(profile.provider, outcome.usage),
            duration=end - start,
            tool_calls=outcome.tool_calls,
            has_tool_interaction=bool(outcome.results),
            streaming_stats=streaming_stats,
        )

    async def _tool_loop(
        self,
        request: AIRequest,
        adapter: ProviderAdapter,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        tools: list[dict] | None,
        streaming: bool,
        transcript: _Transcript,
    ) -> _LoopOutcome:
        """Call the model until it answers without tool calls.

        Without tools this is a single round. With tools it is bounded by
        max_iterations rounds and failure_threshold consecutive all-failed rounds.
        """
        limits = self._settings.tools
        outcome = _LoopOutcome(model=profile.name)
        max_rounds = limits.max_iterations if tools else 1
        consecutive_failures = 0
        tool_choice: str | None = None

        for iteration in range(max_rounds):
            if streaming and outcome.stream_start is None:
                outcome.stream_start = time.time()
            turn = await self._call_model(
                request, adapter, profile, conversation, tools, tool_choice,
                streaming, transcript,
            )
            outcome.usage.add(turn.usage)
            outcome.model = turn.model or outcome.model

            calls = turn.tool_calls
            if tools and not calls:
                calls = adapter.extract_inline_tool_calls(turn.content)
            text = turn.content if streaming else adapter.sanitize_text(turn.content)
            transcript.append(text, delivered=streaming)

            if not tools or not calls:
                return outcome

            conversation.append(ConversationMessage(role="assistant", content=text, tool_calls=calls))
            results = await self._run_tools(calls, iteration, transcript)
            outcome.tool_calls.extend(calls)
            outcome.results.extend(results)

            for call, result in zip(calls, results):
                if result.arguments:
                    call.parameters = result.arguments
                conversation.append(ConversationMessage(
                    role="tool",
                    content=(
                        format_result(result.tool_name, result.result)
                        if result.succeeded
                        else f"Error: {result.error}"
                    ),
                    tool_call_id=call.call_id,
                    tool_name=call.tool_name,
                    is_error=not result.succeeded,
                ))

            if any(r.succeeded for r in results):
                consecutive_failures = 0
            else:
                consecutive_failures += 1
            logger.info(
                "tool_round_complete",
                iteration=iteration + 1,
                calls=len(calls),
                failed=sum(1 for r in results if not r.succeeded),
                consecutive_failures=consecutive_failures,
            )
            if consecutive_failures >= limits.failure_threshold:
                logger.warning("tool_loop_aborted", consecutive_failures=consecutive_failures)
                transcript.append(
                    f"\n⚠️ Tool calls failed in {consecutive_failures} consecutive rounds; "
                    "stopping tool execution. Please check the errors above and try again.\n"
                )
                return outcome

            wrote_todos = any(
                r.tool_name == TODO_WRITE_TOOL and r.succeeded for r in results
            )
            tool_choice = (
                "none" if wrote_todos and adapter.provider_id is ProviderId.deepseek else None
            )

        logger.warning("max_tool_iterations", max=max_rounds)
        transcript.append(
            f"\n⚠️ Reached the limit of {max_rounds} tool rounds; stopping here. "
            "Send a follow-up message to continue.\n"
        )
        return outcome

    async def _call_model(
        self,
        request: AIRequest,
        adapter: ProviderAdapter,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        tools: list[dict] | None,
        tool_choice: str | None,
        streaming: bool,
        transcript: _Transcript,
    ) -> ProviderTurn:
        if streaming:
            sink = transcript.sink
            return await adapter.process_streaming_request(
                request, profile, conversation,
                on_delta=sink if sink is not None else (lambda _text: None),
                tools=tools,
            )
        return await adapter.process_request(
            request, profile, conversation, tools=tools, tool_choice=tool_choice,
        )

    async def _run_tools(
        self, calls: list[ToolCall], iteration: int, transcript: _Transcript
    ) -> list[ToolExecutionResult]:
        plan = self._interactive.create_execution_plan(
            calls, title=f"Tool round {iteration + 1}",
        )

        def on_progress(_session, planned, result: ToolExecutionResult) -> None:
            transcript.append(_tool_marker(planned.tool_name, result))

        session = await self._interactive.start_interactive_execution(
            plan,
            InteractionOptions(
                require_confirmation=self._settings.tools.require_confirmation,
                allow_interruption=self._on_failure is not None,
                confirm=self._confirm,
                on_failure=self._on_failure,
                max_retries_per_tool=self._settings.tools.max_retries_per_tool,
                on_progress=on_progress,
            ),
        )

        results = list(session.results)
        # A cancelled session leaves trailing calls without a result
        for planned in plan.tools[len(results):]:
            skipped = ToolExecutionResult(
                tool_name=planned.tool_name,
                execution_id=f"{session.id}_skipped_{planned.id}",
                call_id=planned.call_id,
            )
            skipped.cancel("Tool execution cancelled")
            transcript.append(_tool_marker(planned.tool_name, skipped))
            results.append(skipped)
        return results

    # ── Responses ──

    def _offline_response(
        self, request: AIRequest, transcript: _Transcript, start: float
    ) -> AIResponse:
        content = (
            "[Offline mode] WriteFlow AI is running without network access.\n"
            f"Key points: {request.prompt[:120]}..."
        )
        transcript.append(content)
        tool_calls: list[ToolCall] = []
        if request.tools_enabled:
            name = request.allowed_tools[0]
            tool_calls.append(ToolCall(
                tool_name=name,
                parameters=dict(_OFFLINE_EXAMPLE_ARGS.get(name, {})),
                call_id="offline_call_1",
            ))
        logger.info("offline_response", tools=len(tool_calls))
        return AIResponse(
            content=content,
            model=OFFLINE_MODEL,
            content_blocks=self._content.process(content),
            usage=TokenUsage(input_tokens=0, output_tokens=len(content)),
            cost=0.0,
            duration=time.time() - start,
            tool_calls=tool_calls,
            has_tool_interaction=False,
        )

    def _error_response(
        self, request: AIRequest, error: Exception, start: float
    ) -> AIResponse:
        content = f"Error processing request: {error}\n\n{ERROR_HINT}"
        return AIResponse(
            content=content,
            model=request.model or "unknown",
            duration=time.time() - start,
        )


def _tool_marker(tool_name: str, result: ToolExecutionResult) -> str:
    running = f"\n🔧 Running {tool_name}...\n"
    if not result.succeeded:
        return f"{running}❌ {tool_name} failed: {result.error}\n"
    rendered = format_result(tool_name, result.result)
    if len(rendered) > MARKER_RESULT_CHARS:
        rendered = rendered[:MARKER_RESULT_CHARS] + "..."
    return f"{running}✅ {tool_name} completed\n{rendered}\n"


def _response_metadata(response: AIResponse) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "model": response.model,
        "usage": {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        },
        "cost": response.cost,
        "duration": response.duration,
        "has_tool_interaction": response.has_tool_interaction,
        "tool_calls": len(response.tool_calls),
    }
    if response.streaming_stats is not None:
        metadata["tokens_per_second"] = response.streaming_stats.tokens_per_second
    return metadata
