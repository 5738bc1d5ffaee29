"""Server-Sent Events helpers.

``iter_sse_data`` decodes the ``data:`` payloads of an upstream SSE
response.  ``sse_generator`` renders the runtime's event stream for a
downstream HTTP response.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict
from enum import Enum

from pydantic import BaseModel

from panda_runtime.events import AgentEvent

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line, skipping ``[DONE]``."""
    async for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload or payload == DONE_SENTINEL:
            continue
        yield payload


def _default(value):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_event(event: AgentEvent) -> str:
    data = json.dumps(asdict(event), default=_default)
    return f"event: {event.type}\ndata: {data}\n\n"


async def sse_generator(
    event_stream: AsyncIterator[AgentEvent],
) -> AsyncIterator[str]:
    """Convert an AgentEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        yield encode_event(event)
    yield "event: done\ndata: {}\n\n"
