from dataclasses import dataclass, field
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from panda_runtime.config import ProviderCapabilities, ReasoningOptions
from panda_runtime.events import (
    ErrorEvent,
    FinishEvent,
    ReasoningEvent,
    TextEvent,
    ToolCallEvent,
)
from panda_runtime.message import user
from panda_runtime.provider import (
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
    StreamOptions,
    TogetherProvider,
)
from panda_runtime.streaming import ToolCall
from panda_runtime.usage import Usage


# ---------------------------------------------------------------------------
# Fake OpenAI streaming objects
# ---------------------------------------------------------------------------

@dataclass
class FakeFunction:
    name: str | None = None
    arguments: str | None = None


@dataclass
class FakeToolCallDelta:
    index: int
    id: str | None = None
    function: FakeFunction | None = None


@dataclass
class FakeDelta:
    content: str | None = None
    tool_calls: list | None = None
    reasoning_content: str | None = None


@dataclass
class FakeChoice:
    delta: FakeDelta = field(default_factory=FakeDelta)
    finish_reason: str | None = None


@dataclass
class FakeUsage:
    prompt_tokens: int
    completion_tokens: int


@dataclass
class FakeChunk:
    choices: list[FakeChoice] = field(default_factory=list)
    usage: FakeUsage | None = None


class FakeStream:
    """Async-iterable stand-in for ``openai.AsyncStream``."""

    def __init__(self, chunks, fail_after: Exception | None = None):
        self.chunks = chunks
        self.fail_after = fail_after
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for chunk in self.chunks:
            yield chunk
        if self.fail_after is not None:
            raise self.fail_after

    async def close(self):
        self.closed = True


def _delta(**kwargs) -> FakeChunk:
    finish = kwargs.pop("finish_reason", None)
    return FakeChunk(choices=[FakeChoice(delta=FakeDelta(**kwargs), finish_reason=finish)])


def _options(**kwargs) -> StreamOptions:
    return StreamOptions(model="gpt-4o", messages=[user("hi")], **kwargs)


async def _collect(provider, options):
    return [e async for e in provider.stream(options)]


def _patch_create(monkeypatch, provider, stream):
    mock_create = AsyncMock(return_value=stream)
    monkeypatch.setattr(provider.client.chat.completions, "create", mock_create)
    return mock_create


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def test_openai_provider_reads_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    p = OpenAIProvider()
    assert p.client.api_key == "sk-from-env"


def test_openrouter_base_url_and_env(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-key")
    p = OpenRouter()
    assert p.base_url == "https://openrouter.ai/api/v1"
    assert p.client.api_key == "or-key"


def test_together_base_url():
    p = TogetherProvider(api_key="t")
    assert p.base_url == "https://api.together.xyz/v1"


def test_compatible_provider_strips_trailing_slash():
    p = OpenAICompatibleProvider(base_url="http://localhost:11434/v1/")
    assert p.base_url == "http://localhost:11434/v1"
    assert p.client.api_key == "DUMMY"


# ---------------------------------------------------------------------------
# Request shaping
# ---------------------------------------------------------------------------

class TestRequestKwargs:
    @pytest.mark.asyncio
    async def test_tools_forwarded_with_tool_choice(self, monkeypatch):
        provider = OpenAIProvider(api_key="k")
        mock_create = _patch_create(monkeypatch, provider, FakeStream([]))
        tools = [{"type": "function", "function": {"name": "f"}}]

        await _collect(provider, _options(tools=tools))

        mock_create.assert_called_once_with(
            model="gpt-4o",
            messages=[{"role": "user", "content": "hi"}],
            temperature=0.7,
            stream=True,
            stream_options={"include_usage": True},
            tools=tools,
            tool_choice="auto",
        )

    @pytest.mark.asyncio
    async def test_no_tools_no_tool_choice(self, monkeypatch):
        provider = OpenAIProvider(api_key="k")
        mock_create = _patch_create(monkeypatch, provider, FakeStream([]))

        await _collect(provider, _options())

        kwargs = mock_create.call_args.kwargs
        assert "tools" not in kwargs
        assert "tool_choice" not in kwargs

    @pytest.mark.asyncio
    async def test_reasoning_effort_forwarded(self, monkeypatch):
        provider = OpenAIProvider(api_key="k")
        mock_create = _patch_create(monkeypatch, provider, FakeStream([]))

        await _collect(
            provider,
            _options(reasoning=ReasoningOptions(enabled=True, effort="high"), max_tokens=256),
        )

        kwargs = mock_create.call_args.kwargs
        assert kwargs["reasoning_effort"] == "high"
        assert kwargs["max_tokens"] == 256


# ---------------------------------------------------------------------------
# Stream normalization
# ---------------------------------------------------------------------------

class TestStream:
    @pytest.mark.asyncio
    async def test_text_reasoning_and_usage(self, monkeypatch):
        provider = OpenAIProvider(api_key="k", rechunk=False)
        stream = FakeStream([
            _delta(reasoning_content="thinking..."),
            _delta(content="Hello "),
            _delta(content="world", finish_reason="stop"),
            FakeChunk(usage=FakeUsage(prompt_tokens=12, completion_tokens=3)),
        ])
        _patch_create(monkeypatch, provider, stream)

        events = await _collect(provider, _options())

        assert events == [
            ReasoningEvent(content="thinking..."),
            TextEvent(content="Hello "),
            TextEvent(content="world"),
            FinishEvent(reason="stop", usage=Usage(12, 3, 15)),
        ]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_rechunking_preserves_text(self, monkeypatch):
        provider = OpenAIProvider(api_key="k")
        text = "A long sentence that arrives in a single delta."
        _patch_create(monkeypatch, provider, FakeStream([_delta(content=text)]))

        events = await _collect(provider, _options())
        texts = [e.content for e in events if isinstance(e, TextEvent)]

        assert len(texts) > 1
        assert "".join(texts) == text

    @pytest.mark.asyncio
    async def test_tool_call_fragments_assembled(self, monkeypatch):
        provider = OpenAIProvider(api_key="k")
        stream = FakeStream([
            _delta(tool_calls=[FakeToolCallDelta(0, "call_a", FakeFunction("read_files", '{"pa'))]),
            _delta(tool_calls=[FakeToolCallDelta(1, "call_b", FakeFunction("run_command", ""))]),
            _delta(tool_calls=[FakeToolCallDelta(0, None, FakeFunction(None, 'ths": ["a.ts"]}'))]),
            _delta(tool_calls=[FakeToolCallDelta(1, None, FakeFunction(None, '{"command": "ls"}'))]),
            _delta(finish_reason="tool_calls"),
        ])
        _patch_create(monkeypatch, provider, stream)

        events = await _collect(provider, _options())

        assert events == [
            ToolCallEvent(ToolCall("call_a", "read_files", '{"paths": ["a.ts"]}')),
            ToolCallEvent(ToolCall("call_b", "run_command", '{"command": "ls"}')),
            FinishEvent(reason="tool_calls", usage=None),
        ]

    @pytest.mark.asyncio
    async def test_api_error_becomes_error_event(self, monkeypatch):
        provider = OpenAIProvider(api_key="k")
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        monkeypatch.setattr(
            provider.client.chat.completions,
            "create",
            AsyncMock(side_effect=openai.APIConnectionError(request=request)),
        )

        events = await _collect(provider, _options())

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert events[0].error.startswith("openai API error")

    @pytest.mark.asyncio
    async def test_mid_stream_failure_closes_response(self, monkeypatch):
        provider = OpenAIProvider(api_key="k", rechunk=False)
        stream = FakeStream([_delta(content="partial")], fail_after=RuntimeError("reset"))
        _patch_create(monkeypatch, provider, stream)

        events = await _collect(provider, _options())

        assert events[0] == TextEvent(content="partial")
        assert isinstance(events[-1], ErrorEvent)
        assert "reset" in events[-1].error
        assert stream.closed

    @pytest.mark.asyncio
    async def test_early_close_closes_response(self, monkeypatch):
        provider = OpenAIProvider(api_key="k", rechunk=False)
        stream = FakeStream([_delta(content="a"), _delta(content="b")])
        _patch_create(monkeypatch, provider, stream)

        gen = provider.stream(_options())
        first = await gen.__anext__()
        await gen.aclose()

        assert first == TextEvent(content="a")
        assert stream.closed


def test_capabilities_override():
    caps = ProviderCapabilities(supports_reasoning=True)
    assert OpenAIProvider(api_key="k", capabilities=caps).capabilities.supports_reasoning
    assert not OpenAIProvider(api_key="k").capabilities.supports_reasoning
