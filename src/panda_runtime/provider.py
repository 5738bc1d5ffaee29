"""Provider stream adapters.

Every backend is wrapped by a :class:`ModelProvider` whose ``stream()``
turns the vendor wire format into the canonical
:data:`~panda_runtime.events.StreamEvent` sequence.  A stream always
ends with exactly one ``FinishEvent`` or ``ErrorEvent`` and never
raises; closing the generator early releases the underlying
connection.
"""

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from openai import APIError, AsyncOpenAI

from panda_runtime.config import (
    ProviderCapabilities,
    ProviderType,
    ReasoningOptions,
    default_capabilities,
)
from panda_runtime.events import (
    ErrorEvent,
    FinishEvent,
    ReasoningEvent,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
)
from panda_runtime.message import Message
from panda_runtime.streaming import (
    ToolCallAccumulator,
    ToolCallFragment,
    split_for_perceived_streaming,
)
from panda_runtime.usage import Usage

logger = logging.getLogger(__name__)


@dataclass
class StreamOptions:
    """One streaming completion request."""

    model: str
    messages: list[Message]
    tools: list[dict] | None = None
    reasoning: ReasoningOptions | None = None
    temperature: float = 0.7
    max_tokens: int | None = None
    extra: dict = field(default_factory=dict)


class ModelProvider(ABC):
    """Shared interface for all provider adapters."""

    name: str = "provider"
    provider_type: ProviderType = ProviderType.CUSTOM

    def __init__(self, capabilities: ProviderCapabilities | None = None):
        self.capabilities = capabilities or default_capabilities(
            self.provider_type
        )

    @abstractmethod
    def stream(self, options: StreamOptions) -> AsyncIterator[StreamEvent]:
        """Stream one completion as canonical events."""
        ...


class OpenAICompatibleProvider(ModelProvider):
    """Adapter for OpenAI-style SSE chat-completions deltas.

    Works for OpenAI itself and for any endpoint speaking the same
    protocol (OpenRouter, Together.ai, vLLM, Ollama, ...).

    Args:
        base_url: API root, e.g. ``http://localhost:11434/v1``.
        api_key: Bearer token; some local servers accept anything.
        rechunk: Split large text deltas into small pieces for smoother
            perceived streaming.
    """

    name = "openai-compatible"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float = 600.0,
        max_retries: int = 5,
        default_headers: dict[str, str] | None = None,
        capabilities: ProviderCapabilities | None = None,
        rechunk: bool = True,
    ):
        super().__init__(capabilities)
        self.base_url = base_url.rstrip("/") if base_url else None
        self.rechunk = rechunk
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            max_retries=max_retries,
            timeout=timeout,
            default_headers=default_headers or None,
        )

    def _request_kwargs(self, options: StreamOptions) -> dict:
        kwargs: dict = {
            "model": options.model,
            "messages": [m.to_wire() for m in options.messages],
            "temperature": options.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens
        if options.tools:
            kwargs["tools"] = options.tools
            kwargs["tool_choice"] = "auto"
        if options.reasoning and options.reasoning.enabled and options.reasoning.effort:
            kwargs["reasoning_effort"] = options.reasoning.effort
        kwargs.update(options.extra)
        return kwargs

    async def stream(self, options: StreamOptions) -> AsyncIterator[StreamEvent]:
        response = None
        acc = ToolCallAccumulator()
        finish_reason = None
        usage: Usage | None = None
        try:
            response = await self.client.chat.completions.create(
                **self._request_kwargs(options)
            )
            async for chunk in response:
                if getattr(chunk, "usage", None):
                    usage = Usage.of(
                        chunk.usage.prompt_tokens,
                        chunk.usage.completion_tokens,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                reasoning = (
                    getattr(delta, "reasoning_content", None)
                    or getattr(delta, "reasoning", None)
                )
                if reasoning:
                    yield ReasoningEvent(content=reasoning)

                if delta.content:
                    pieces = (
                        split_for_perceived_streaming(delta.content)
                        if self.rechunk else [delta.content]
                    )
                    for piece in pieces:
                        yield TextEvent(content=piece)

                for frag in delta.tool_calls or []:
                    fn = frag.function
                    acc.feed(ToolCallFragment(
                        index=frag.index if frag.index is not None else 0,
                        call_id=frag.id,
                        name=fn.name if fn else None,
                        arguments_delta=fn.arguments if fn else None,
                    ))

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except APIError as e:
            logger.error(f"{self.name} stream failed: {e}")
            yield ErrorEvent(error=f"{self.name} API error: {e}")
            return
        except Exception as e:
            logger.error(f"{self.name} stream failed: {e}")
            yield ErrorEvent(error=f"Unexpected error: {e}")
            return
        finally:
            if response is not None:
                await response.close()

        calls = acc.finalize()
        for tc in calls:
            yield ToolCallEvent(tool_call=tc)
        if finish_reason is None:
            finish_reason = "tool_calls" if calls else "stop"
        yield FinishEvent(reason=finish_reason, usage=usage)


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"
    provider_type = ProviderType.OPENAI

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        super().__init__(base_url=None, api_key=api_key, **kwargs)


class OpenRouter(OpenAICompatibleProvider):
    name = "openrouter"
    provider_type = ProviderType.OPENROUTER

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        kwargs.setdefault("timeout", 180.0)
        super().__init__(
            base_url="https://openrouter.ai/api/v1", api_key=api_key, **kwargs
        )


class TogetherProvider(OpenAICompatibleProvider):
    name = "together"
    provider_type = ProviderType.TOGETHER

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("TOGETHER_API_KEY")
        super().__init__(
            base_url="https://api.together.xyz/v1", api_key=api_key, **kwargs
        )
