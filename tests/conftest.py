import json

import httpx
import pytest

from panda_runtime.context import (
    CommandResult,
    FileContent,
    FileWrite,
    ToolContext,
    WriteOutcome,
)
from panda_runtime.events import FinishEvent, TextEvent, ToolCallEvent
from panda_runtime.guardrails import ChatMode
from panda_runtime.prompts import PromptContext
from panda_runtime.provider import ModelProvider, StreamOptions
from panda_runtime.streaming import ToolCall
from panda_runtime.usage import Usage


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Provider that replays pre-queued event lists. No network calls.

    Each ``stream()`` call pops the next script.  ``closed_early``
    counts streams the consumer closed before the script ran out.
    """

    name = "scripted"

    def __init__(self, scripts=None, capabilities=None):
        super().__init__(capabilities)
        self.scripts: list[list] = list(scripts or [])
        self.call_log: list[StreamOptions] = []
        self.closed_early = 0

    def queue(self, *scripts):
        self.scripts.extend(scripts)

    async def stream(self, options):
        self.call_log.append(options)
        events = self.scripts.pop(0)
        sent = 0
        try:
            for event in events:
                yield event
                sent += 1
        finally:
            if sent < len(events):
                self.closed_early += 1


# ---------------------------------------------------------------------------
# Script builders
# ---------------------------------------------------------------------------

DEFAULT_USAGE = Usage.of(10, 5)


def text_script(*chunks: str, usage: Usage | None = DEFAULT_USAGE) -> list:
    """Text deltas followed by a finish event."""
    return [
        *(TextEvent(content=c) for c in chunks),
        FinishEvent(reason="stop", usage=usage),
    ]


def make_call(name: str, args: dict | str, call_id: str = "call_1") -> ToolCall:
    arguments = args if isinstance(args, str) else json.dumps(args)
    return ToolCall(id=call_id, name=name, arguments=arguments)


def tool_script(
    *calls: ToolCall, content: str = "", usage: Usage | None = DEFAULT_USAGE
) -> list:
    """Optional text, complete tool calls, then a finish event."""
    events: list = [TextEvent(content=content)] if content else []
    events.extend(ToolCallEvent(tool_call=c) for c in calls)
    events.append(FinishEvent(reason="tool_calls", usage=usage))
    return events


# ---------------------------------------------------------------------------
# Tool context double
# ---------------------------------------------------------------------------

class FakeToolContext(ToolContext):
    """Records every call and serves files from a dict."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files = dict(files or {})
        self.read_log: list[list[str]] = []
        self.writes: list[FileWrite] = []
        self.commands: list[tuple[str, int | None, str | None]] = []
        self.command_result = CommandResult(stdout="ok", exit_code=0)

    async def read_files(self, paths):
        self.read_log.append(list(paths))
        return [FileContent(path=p, content=self.files.get(p)) for p in paths]

    async def write_files(self, files):
        self.writes.extend(files)
        return [WriteOutcome(path=f.path, success=True) for f in files]

    async def run_command(self, command, timeout=None, cwd=None):
        self.commands.append((command, timeout, cwd))
        return self.command_result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def tool_context():
    return FakeToolContext(files={"a.ts": "const a = 1"})


@pytest.fixture
def make_prompt():
    """Factory fixture for prompt contexts."""

    def _make(user_message: str = "hello", mode: ChatMode = ChatMode.BUILD, **kwargs):
        return PromptContext(
            project_name="demo",
            chat_mode=mode,
            user_message=user_message,
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# HTTP body double
# ---------------------------------------------------------------------------

class TrackingByteStream(httpx.AsyncByteStream):
    """Response body served chunk by chunk that records when it is closed."""

    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks
        self.sent = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.sent += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True
