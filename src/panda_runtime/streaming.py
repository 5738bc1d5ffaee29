"""Streaming primitives for provider responses.

Adapters feed :class:`ToolCallFragment` objects into a
:class:`ToolCallAccumulator`, which reassembles tool calls whose
arguments arrive in pieces keyed by positional index.  Nothing is
released until the transport signals completion, so callers never see
truncated argument JSON.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class ToolCall:
    """A resolved tool call.

    ``arguments`` stays the raw JSON string the model produced; it is only
    parsed when the call is executed.
    """

    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments."""

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = ToolCall()
        tc = self._pending[fragment.index]
        if fragment.call_id:
            tc.id = fragment.call_id
        if fragment.name:
            tc.name = fragment.name
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta

    def pop(self, index: int) -> ToolCall | None:
        """Remove and return the call buffered at *index*, finalized."""
        tc = self._pending.pop(index, None)
        if tc is None:
            return None
        return self._complete(index, tc)

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order and reset."""
        calls = [
            self._complete(i, self._pending[i])
            for i in sorted(self._pending)
        ]
        self._pending.clear()
        return calls

    @staticmethod
    def _complete(index: int, tc: ToolCall) -> ToolCall:
        if not tc.id:
            tc.id = f"call_{index}_{uuid.uuid4().hex[:12]}"
        if not tc.arguments.strip():
            tc.arguments = "{}"
        return tc


_WHITESPACE_SPLIT = re.compile(r"(\s+)")


def split_for_perceived_streaming(
    text: str, max_chunk_chars: int = 12
) -> list[str]:
    """Re-chunk a large text delta into smaller pieces.

    Prefers whitespace boundaries and falls back to fixed-size slices for
    long tokens.  ``"".join(result) == text`` always holds.
    """
    if not text:
        return []
    if len(text) <= max_chunk_chars:
        return [text]

    chunks: list[str] = []
    buf = ""
    for part in _WHITESPACE_SPLIT.split(text):
        if not part:
            continue
        if len(part) > max_chunk_chars:
            if buf:
                chunks.append(buf)
                buf = ""
            for i in range(0, len(part), max_chunk_chars):
                chunks.append(part[i:i + max_chunk_chars])
            continue
        if len(buf) + len(part) > max_chunk_chars and buf:
            chunks.append(buf)
            buf = ""
        buf += part
    if buf:
        chunks.append(buf)
    return chunks
