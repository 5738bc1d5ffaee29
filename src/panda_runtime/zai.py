"""Z.ai streaming adapter.

Z.ai speaks an OpenAI-shaped SSE protocol with two quirks: tool
arguments only stream when the non-standard ``tool_stream`` flag is
set, and ``system`` role messages are rejected.  Tool-call fragments
are reassembled per index and released once the stream ends.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx

from panda_runtime.config import ProviderCapabilities, ProviderType
from panda_runtime.errors import EmptyPromptError, ProviderError
from panda_runtime.events import (
    ErrorEvent,
    FinishEvent,
    ReasoningEvent,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
)
from panda_runtime.message import Message, MessageRole
from panda_runtime.provider import ModelProvider, StreamOptions
from panda_runtime.sse import iter_sse_data
from panda_runtime.streaming import ToolCallAccumulator, ToolCallFragment
from panda_runtime.usage import Usage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.z.ai/api/coding/paas/v4"


def filter_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Drop ``system`` messages and render the rest for the wire.

    Raises:
        EmptyPromptError: If nothing is left after filtering.
    """
    kept = [m.to_wire() for m in messages if m.role != MessageRole.SYSTEM]
    if not kept:
        raise EmptyPromptError(
            "Invalid prompt: messages must not be empty (Z.ai does not "
            "support the system role; ensure a user message is present)."
        )
    return kept


class ZaiProvider(ModelProvider):
    name = "zai"
    provider_type = ProviderType.ZAI

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float = 600.0,
        default_headers: dict[str, str] | None = None,
        capabilities: ProviderCapabilities | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(capabilities)
        self.api_key = api_key or os.getenv("ZAI_API_KEY") or ""
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.default_headers = default_headers or {}
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _request_body(self, options: StreamOptions) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": options.model,
            "messages": filter_messages(options.messages),
            "temperature": options.temperature,
            "stream": True,
        }
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.tools:
            body["tools"] = options.tools
            body["tool_choice"] = "auto"
            body["tool_stream"] = True
        if options.reasoning is not None:
            body["thinking"] = {
                "type": "enabled" if options.reasoning.enabled else "disabled"
            }
        body.update(options.extra)
        return body

    async def stream(self, options: StreamOptions) -> AsyncIterator[StreamEvent]:
        try:
            body = self._request_body(options)
        except EmptyPromptError as e:
            yield ErrorEvent(error=str(e))
            return

        acc = ToolCallAccumulator()
        usage: Usage | None = None
        finish_reason: str | None = None
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                    **self.default_headers,
                },
                json=body,
            ) as response:
                if response.status_code >= 400:
                    text = (await response.aread()).decode("utf-8", "replace")
                    raise ProviderError(
                        status_code=response.status_code,
                        message=f"Z.ai API error ({response.status_code}): {text}",
                        response_text=text,
                    )

                async for data in iter_sse_data(response.aiter_lines()):
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed SSE payload: {data!r}")
                        continue

                    if chunk.get("usage"):
                        usage = Usage.of(
                            chunk["usage"].get("prompt_tokens"),
                            chunk["usage"].get("completion_tokens"),
                        )
                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}

                    if delta.get("reasoning_content"):
                        yield ReasoningEvent(content=delta["reasoning_content"])
                    if delta.get("content"):
                        yield TextEvent(content=delta["content"])
                    for frag in delta.get("tool_calls") or []:
                        fn = frag.get("function") or {}
                        acc.feed(ToolCallFragment(
                            index=frag.get("index") or 0,
                            call_id=frag.get("id"),
                            name=fn.get("name"),
                            arguments_delta=fn.get("arguments"),
                        ))
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except ProviderError as e:
            logger.error(str(e))
            yield ErrorEvent(error=str(e))
            return
        except httpx.HTTPError as e:
            logger.error(f"Z.ai transport error: {e}")
            yield ErrorEvent(error=f"Z.ai streaming error: {e}")
            return
        except Exception as e:
            logger.error(f"Z.ai stream failed: {e}")
            yield ErrorEvent(error=f"Z.ai streaming error: {e}")
            return

        calls = acc.finalize()
        for tc in calls:
            yield ToolCallEvent(tool_call=tc)
        yield FinishEvent(
            reason=finish_reason or ("tool_calls" if calls else "stop"),
            usage=usage,
        )
