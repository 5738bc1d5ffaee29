import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field, replace

from panda_runtime.config import RuntimeConfig, RuntimeOptions
from panda_runtime.context import ToolContext
from panda_runtime.dedup import dedupe, detect_loop, tool_pattern
from panda_runtime.errors import ErrorKind
from panda_runtime.events import (
    AgentEvent,
    CompleteEvent,
    ErrorEvent,
    FinishEvent,
    ProgressStepEvent,
    ReasoningEvent,
    ResetEvent,
    StatusThinkingEvent,
    TextEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from panda_runtime.guardrails import ChatMode, Guardrail, find_fence
from panda_runtime.instrumentation import (
    completion_span,
    record_error,
    record_run_error,
    record_usage,
    run_span,
)
from panda_runtime.message import Message, MessageRole, user
from panda_runtime.prompts import PromptContext, build_messages
from panda_runtime.provider import ModelProvider, StreamOptions
from panda_runtime.state import RunState
from panda_runtime.streaming import ToolCall
from panda_runtime.tools import (
    AGENT_TOOLS,
    ARTIFACT_TOOLS,
    ToolResult,
    execute_tool,
    try_parse_arguments,
)
from panda_runtime.usage import Usage, estimate_usage

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_MESSAGE = (
    "Model produced no output. This may indicate:\n"
    "1. The provider does not support tools/function calling\n"
    "2. The API endpoint is not responding correctly\n"
    "3. The model configuration is incompatible\n\n"
    "Try using Discuss mode (no tools) or switching to a different provider."
)


@dataclass
class RunResult:
    """The result of a single Runner.run() invocation."""

    content: str = ""
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    error: ErrorEvent | None = None


@dataclass
class _Pass:
    """Output collected from one adapter invocation."""

    content: str = ""
    raw: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    error: ErrorEvent | None = None
    fence_seen: bool = False
    cancelled: bool = False


def _is_set(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def _tool_note(call: ToolCall, note: str) -> Message:
    return Message(role=MessageRole.TOOL, content=note, tool_call_id=call.id)


class Runner:
    """Drives one conversation through the iterate / tool-call loop.

    Each iteration streams a completion from the provider, enforces the
    chat-mode output contract (with at most one rewrite pass), and
    executes any tool calls sequentially through the host
    :class:`~panda_runtime.context.ToolContext`.  The loop ends when the
    model answers without tool calls, or with a terminal ``ErrorEvent``.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.
    A single Runner may serve concurrent runs; all per-run data lives in
    a fresh :class:`~panda_runtime.state.RunState`.

    Args:
        provider: Adapter used for every completion in the run.
        tool_context: Host handlers behind ``read_files``, ``write_files``
            and ``run_command``.
        options: Model, temperature, token and reasoning settings.
        config: Iteration, tool-call and loop-detection bounds.
        guardrail: Mode-contract evaluator; defaults to the keyword
            execution-intent policy.
    """

    def __init__(
        self,
        provider: ModelProvider,
        tool_context: ToolContext,
        options: RuntimeOptions | None = None,
        config: RuntimeConfig | None = None,
        guardrail: Guardrail | None = None,
    ):
        self.provider = provider
        self.tool_context = tool_context
        self.options = options or RuntimeOptions()
        self.config = config or RuntimeConfig()
        self.guardrail = guardrail or Guardrail()

    async def run(
        self, prompt: PromptContext, cancel: asyncio.Event | None = None
    ) -> RunResult:
        """Run to completion and collect the outcome."""
        state = RunState(messages=build_messages(prompt))
        result = RunResult()
        async with aclosing(self._stream(prompt, state, cancel)) as events:
            async for event in events:
                if isinstance(event, CompleteEvent):
                    result.content = event.content
                elif isinstance(event, ErrorEvent):
                    result.error = event
        result.tool_results = list(state.tool_results)
        result.usage = state.usage
        return result

    async def iter(
        self, prompt: PromptContext, cancel: asyncio.Event | None = None
    ) -> AsyncIterator[AgentEvent]:
        """Run the loop, yielding events as execution proceeds.

        Setting *cancel* stops the run at the next stream event or before
        the next tool execution; no further provider calls or tool
        executions happen after that.
        """
        state = RunState(messages=build_messages(prompt))
        async with aclosing(self._stream(prompt, state, cancel)) as events:
            async for event in events:
                yield event

    async def _stream(
        self,
        prompt: PromptContext,
        state: RunState,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[AgentEvent]:
        async with run_span(prompt.chat_mode.value, self.options.model) as span:
            try:
                async with aclosing(self._loop(prompt, state, cancel)) as events:
                    async for event in events:
                        if isinstance(event, ErrorEvent):
                            record_run_error(span, event.kind.value, event.error)
                        yield event
            except Exception as e:
                logger.exception(f"Agent run failed: {e}")
                record_error(span, e)
                yield ErrorEvent(
                    error=f"Agent runtime error: {e}", kind=ErrorKind.INTERNAL
                )

    # ------------------------------------------------------------------
    # Iterate loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        prompt: PromptContext,
        state: RunState,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[AgentEvent]:
        if not any(m.role == MessageRole.USER for m in state.messages):
            yield ErrorEvent(
                error="Invalid prompt: messages must not be empty (no user message provided).",
                kind=ErrorKind.INVALID_PROMPT,
            )
            return

        mode = prompt.chat_mode
        max_iterations = self.config.max_iterations
        tools = AGENT_TOOLS if mode == ChatMode.BUILD else None

        while state.iteration < max_iterations and not state.is_complete:
            if _is_set(cancel):
                logger.info(f"Run cancelled before iteration {state.iteration + 1}")
                return
            state.iteration += 1
            n = state.iteration

            yield StatusThinkingEvent(content=f"Iteration {n}: Generating response...")
            yield ProgressStepEvent(
                content=f"Iteration {n}: analyzing context and drafting response",
                category="analysis",
            )

            options = self._stream_options(state.messages, tools)
            current = _Pass()
            async with aclosing(
                self._consume(options, current, cancel, guard=True)
            ) as events:
                async for event in events:
                    yield event
            state.usage += self._pass_usage(options, current)
            if current.error is not None:
                yield current.error
                return
            if current.cancelled:
                return

            directive = self.guardrail.evaluate(
                mode,
                prompt.user_message,
                current.content,
                current.tool_calls,
                fence_seen=current.fence_seen,
            )
            if directive is not None:
                if _is_set(cancel):
                    return
                logger.info(f"Guardrail triggered ({directive.reason}) on iteration {n}")
                yield StatusThinkingEvent(content=directive.status)
                yield ProgressStepEvent(content=directive.progress, category="rewrite")
                yield ResetEvent(reason=directive.reason)

                retry_options = replace(
                    options,
                    messages=[*state.messages, user(directive.instruction(current.raw))],
                    tools=AGENT_TOOLS if directive.tools_enabled else None,
                )
                current = _Pass()
                async with aclosing(
                    self._consume(retry_options, current, cancel, guard=False)
                ) as events:
                    async for event in events:
                        yield event
                state.usage += self._pass_usage(retry_options, current)
                if current.error is not None:
                    yield current.error
                    return
                if current.cancelled:
                    return

            if not current.content.strip() and not current.tool_calls:
                logger.error("Empty response detected - no content and no tool calls")
                yield ErrorEvent(
                    error=EMPTY_RESPONSE_MESSAGE, kind=ErrorKind.EMPTY_RESPONSE
                )
                return

            state.messages.append(Message(
                role=MessageRole.ASSISTANT,
                content=current.content,
                tool_calls=current.tool_calls or None,
            ))

            if current.tool_calls:
                aborted = False
                async with aclosing(
                    self._handle_tool_calls(current.tool_calls, state, cancel)
                ) as events:
                    async for event in events:
                        yield event
                        if isinstance(event, ErrorEvent):
                            aborted = True
                if aborted:
                    return
                if _is_set(cancel):
                    return
                continue

            state.is_complete = True
            yield ProgressStepEvent(
                content="Run complete: final response ready",
                status="completed",
                category="complete",
            )
            yield CompleteEvent(content=current.content, usage=state.usage)

        if not state.is_complete:
            yield ErrorEvent(
                error=f"Agent reached maximum iterations ({max_iterations}) without completing",
                kind=ErrorKind.MAX_ITERATIONS,
            )

    def _stream_options(
        self, messages: list[Message], tools: list[dict] | None
    ) -> StreamOptions:
        reasoning = None
        if self.provider.capabilities.supports_reasoning:
            reasoning = self.options.reasoning
        return StreamOptions(
            model=self.options.model,
            messages=list(messages),
            tools=tools,
            reasoning=reasoning,
            temperature=self.options.temperature,
            max_tokens=self.options.max_tokens,
        )

    def _pass_usage(self, options: StreamOptions, current: _Pass) -> Usage:
        if current.usage is not None:
            return current.usage
        return estimate_usage(
            [m.content for m in options.messages],
            current.raw,
            self.provider.provider_type.value,
            options.model,
        )

    async def _consume(
        self,
        options: StreamOptions,
        current: _Pass,
        cancel: asyncio.Event | None,
        guard: bool,
    ) -> AsyncIterator[AgentEvent]:
        """Forward one adapter stream, collecting its output into *current*.

        With *guard* set, text is scanned for a code fence before it is
        forwarded; on the first fence only the safe prefix is forwarded
        and the stream is closed.
        """
        async with completion_span(self.provider.name, options.model) as span:
            async with aclosing(self.provider.stream(options)) as stream:
                async for event in stream:
                    if _is_set(cancel):
                        current.cancelled = True
                        return

                    if isinstance(event, TextEvent):
                        if not event.content:
                            continue
                        current.raw += event.content
                        if guard:
                            safe = find_fence(current.content, event.content)
                            if safe is not None:
                                if safe:
                                    piece = event.content[:safe]
                                    current.content += piece
                                    yield TextEvent(content=piece)
                                current.fence_seen = True
                                return
                        current.content += event.content
                        yield event
                    elif isinstance(event, ReasoningEvent):
                        if event.content:
                            yield event
                    elif isinstance(event, StatusThinkingEvent):
                        yield event
                    elif isinstance(event, ToolCallEvent):
                        current.tool_calls.append(event.tool_call)
                    elif isinstance(event, FinishEvent):
                        current.usage = event.usage
                        record_usage(span, event.usage)
                    elif isinstance(event, ErrorEvent):
                        logger.error(f"Provider stream error: {event.error}")
                        record_run_error(span, event.kind.value, event.error)
                        current.error = event
                        return

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def _handle_tool_calls(
        self,
        calls: list[ToolCall],
        state: RunState,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[AgentEvent]:
        limit = self.config.max_tool_calls_per_iteration
        if len(calls) > limit:
            yield StatusThinkingEvent(
                content=f"Limiting to {limit} tool calls out of {len(calls)} requested..."
            )
            for dropped in calls[limit:]:
                state.messages.append(_tool_note(
                    dropped,
                    f"Not executed: at most {limit} tool calls are run per turn. "
                    "Issue this call again if it is still needed.",
                ))
            calls = calls[:limit]

        if self.config.enable_tool_deduplication:
            calls, skipped = dedupe(calls, state.executed_call_fingerprints)
            for tc in skipped:
                yield StatusThinkingEvent(content=f"Skipping duplicate tool call: {tc.name}")
                state.messages.append(_tool_note(
                    tc,
                    "Skipped: an identical call was already executed in this run. "
                    "Use its earlier result.",
                ))

        state.tool_call_pattern_history.append(tool_pattern(calls))
        looping = detect_loop(
            state.tool_call_pattern_history, self.config.tool_loop_threshold
        )
        if looping is not None:
            logger.warning(f"Tool call loop detected: {looping}")
            yield ErrorEvent(
                error=f"Detected tool call loop: {looping}. Stopping to prevent infinite iteration.",
                kind=ErrorKind.LOOP_DETECTED,
            )
            return

        for tc in calls:
            if _is_set(cancel):
                logger.info(f"Run cancelled before executing {tc.name}")
                return
            has_target = tc.name in ARTIFACT_TOOLS
            yield ToolCallEvent(tool_call=tc)
            yield StatusThinkingEvent(content=f"Executing tool: {tc.name}...")
            yield ProgressStepEvent(
                content=f"Executing tool: {tc.name}",
                category="tool",
                tool_name=tc.name,
                args=try_parse_arguments(tc.arguments),
                has_artifact_target=has_target,
            )

            result = await execute_tool(tc, self.tool_context)
            state.tool_results.append(result)

            yield ToolResultEvent(tool_result=result)
            yield ProgressStepEvent(
                content=(
                    f"Tool failed: {tc.name}" if result.error
                    else f"Tool completed: {tc.name}"
                ),
                status="error" if result.error else "completed",
                category="tool",
                tool_name=tc.name,
                duration_ms=result.duration_ms,
                error=result.error,
                has_artifact_target=has_target,
            )
            state.messages.append(Message(
                role=MessageRole.TOOL,
                content=result.as_message_content(),
                tool_call_id=tc.id,
            ))
