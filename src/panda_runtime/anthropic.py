"""Anthropic Messages API adapter.

Streams ``POST /v1/messages`` over SSE and maps Anthropic's event
vocabulary onto canonical events:

- ``content_block_delta`` / ``text_delta``      -> ``TextEvent``
- ``content_block_delta`` / ``thinking_delta``  -> ``ReasoningEvent``
- ``content_block_delta`` / ``input_json_delta`` -> buffered per block
  index, released as one ``ToolCallEvent`` at ``content_block_stop``
- ``message_start`` / ``message_delta``         -> usage and stop reason
- ``error``                                     -> ``ErrorEvent``
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

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MAX_TOKENS = 8192
DEFAULT_THINKING_BUDGET = 1024

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


class AnthropicProvider(ModelProvider):
    """Adapter for Anthropic's native streaming format.

    Args:
        api_key: Falls back to ``ANTHROPIC_API_KEY``.
        base_url: Falls back to ``ANTHROPIC_API_URL``, then the public API.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject a
            ``MockTransport`` here).
    """

    name = "anthropic"
    provider_type = ProviderType.ANTHROPIC

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        api_version: str = "2023-06-01",
        timeout: float = 600.0,
        default_headers: dict[str, str] | None = None,
        capabilities: ProviderCapabilities | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(capabilities)
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY") or ""
        self.base_url = (
            base_url or os.getenv("ANTHROPIC_API_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.api_version = api_version
        self.default_headers = default_headers or {}
        self.client = client or httpx.AsyncClient(timeout=timeout)

    # ------------------------------------------------------------------
    # Request shaping
    # ------------------------------------------------------------------

    def _prepare_messages(
        self, messages: list[Message]
    ) -> tuple[list[dict[str, Any]], str | None]:
        prepared: list[dict[str, Any]] = []
        system_segments: list[str] = []

        for message in messages:
            if message.role == MessageRole.SYSTEM:
                if message.content.strip():
                    system_segments.append(message.content.strip())
                continue

            if message.role == MessageRole.TOOL:
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }
                # consecutive tool results share one user turn
                if (
                    prepared
                    and prepared[-1]["role"] == "user"
                    and prepared[-1]["content"]
                    and prepared[-1]["content"][-1].get("type") == "tool_result"
                ):
                    prepared[-1]["content"].append(block)
                else:
                    prepared.append({"role": "user", "content": [block]})
                continue

            blocks: list[dict[str, Any]] = []
            if message.content.strip():
                blocks.append({"type": "text", "text": message.content})
            for tc in message.tool_calls or []:
                try:
                    tool_input = json.loads(tc.arguments or "{}")
                except (json.JSONDecodeError, RecursionError):
                    tool_input = {}
                blocks.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": tool_input if isinstance(tool_input, dict) else {},
                })
            if not blocks:
                continue
            prepared.append({"role": message.role.value, "content": blocks})

        if not prepared:
            raise EmptyPromptError(
                "Invalid prompt: no non-system messages to send to Anthropic."
            )
        system = "\n\n".join(system_segments) or None
        return prepared, system

    @staticmethod
    def _prepare_tools(tools: list[dict] | None) -> list[dict] | None:
        if not tools:
            return None
        return [
            {
                "name": t["function"]["name"],
                "description": t["function"].get("description", ""),
                "input_schema": t["function"]["parameters"],
            }
            for t in tools
        ]

    def _request_body(self, options: StreamOptions) -> dict[str, Any]:
        messages, system = self._prepare_messages(options.messages)
        body: dict[str, Any] = {
            "model": options.model,
            "messages": messages,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if system:
            body["system"] = system
        tools = self._prepare_tools(options.tools)
        if tools:
            body["tools"] = tools

        reasoning = options.reasoning
        if reasoning and reasoning.enabled:
            # extended thinking requires the default temperature
            body["thinking"] = {
                "type": "enabled",
                "budget_tokens": reasoning.budget_tokens or DEFAULT_THINKING_BUDGET,
            }
        else:
            body["temperature"] = options.temperature
        body.update(options.extra)
        return body

    def _headers(self) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            **self.default_headers,
        }

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, options: StreamOptions) -> AsyncIterator[StreamEvent]:
        try:
            body = self._request_body(options)
        except EmptyPromptError as e:
            yield ErrorEvent(error=str(e))
            return

        acc = ToolCallAccumulator()
        input_tokens = 0
        output_tokens = 0
        finish_reason = "stop"
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/v1/messages",
                headers=self._headers(),
                json=body,
            ) as response:
                if response.status_code >= 400:
                    text = (await response.aread()).decode("utf-8", "replace")
                    raise ProviderError(
                        status_code=response.status_code,
                        message=f"Anthropic API error ({response.status_code}): {text}",
                        response_text=text,
                    )

                async for data in iter_sse_data(response.aiter_lines()):
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed SSE payload: {data!r}")
                        continue
                    kind = event.get("type")

                    if kind == "message_start":
                        usage = event.get("message", {}).get("usage", {})
                        input_tokens = usage.get("input_tokens") or 0
                    elif kind == "content_block_start":
                        block = event.get("content_block", {})
                        if block.get("type") == "tool_use":
                            acc.feed(ToolCallFragment(
                                index=event["index"],
                                call_id=block.get("id"),
                                name=block.get("name"),
                            ))
                    elif kind == "content_block_delta":
                        delta = event.get("delta", {})
                        delta_type = delta.get("type")
                        if delta_type == "text_delta" and delta.get("text"):
                            yield TextEvent(content=delta["text"])
                        elif delta_type == "thinking_delta" and delta.get("thinking"):
                            yield ReasoningEvent(content=delta["thinking"])
                        elif delta_type == "input_json_delta":
                            acc.feed(ToolCallFragment(
                                index=event["index"],
                                arguments_delta=delta.get("partial_json", ""),
                            ))
                    elif kind == "content_block_stop":
                        tc = acc.pop(event.get("index", -1))
                        if tc is not None:
                            yield ToolCallEvent(tool_call=tc)
                    elif kind == "message_delta":
                        stop = event.get("delta", {}).get("stop_reason")
                        if stop:
                            finish_reason = _STOP_REASONS.get(stop, stop)
                        usage = event.get("usage", {})
                        output_tokens = usage.get("output_tokens") or output_tokens
                    elif kind == "message_stop":
                        break
                    elif kind == "error":
                        err = event.get("error", {})
                        yield ErrorEvent(
                            error=f"Anthropic stream error: {err.get('message', 'unknown error')}"
                        )
                        return
        except ProviderError as e:
            logger.error(str(e))
            yield ErrorEvent(error=str(e))
            return
        except httpx.HTTPError as e:
            logger.error(f"Anthropic transport error: {e}")
            yield ErrorEvent(error=f"Anthropic transport error: {e}")
            return
        except Exception as e:
            logger.error(f"Anthropic stream failed: {e}")
            yield ErrorEvent(error=f"Unexpected error: {e}")
            return

        # blocks never closed by content_block_stop
        for tc in acc.finalize():
            yield ToolCallEvent(tool_call=tc)
        yield FinishEvent(
            reason=finish_reason,
            usage=Usage.of(input_tokens, output_tokens),
        )
