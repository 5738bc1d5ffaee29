"""Events produced while streaming.

Two layers share these types.  Provider adapters yield
:data:`StreamEvent` values (text, reasoning, complete tool calls,
status, finish, error).  The :class:`~panda_runtime.runner.Runner`
forwards most of them and adds its own run-level events; the full set
it can yield is :data:`AgentEvent`.

Every event carries a ``type`` tag usable as an SSE event name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, Union

from panda_runtime.errors import ErrorKind
from panda_runtime.streaming import ToolCall
from panda_runtime.tools import ToolResult
from panda_runtime.usage import Usage

ProgressStatus = Literal["running", "completed", "error"]
ProgressCategory = Literal["analysis", "rewrite", "tool", "complete"]
ResetReason = Literal["plan_mode_rewrite", "build_mode_rewrite"]


@dataclass
class TextEvent:
    """Visible answer delta."""

    type: ClassVar[str] = "text"
    content: str = ""


@dataclass
class ReasoningEvent:
    """Reasoning / thinking delta; never part of the answer."""

    type: ClassVar[str] = "reasoning"
    content: str = ""


@dataclass
class ToolCallEvent:
    """A fully assembled tool call."""

    type: ClassVar[str] = "tool_call"
    tool_call: ToolCall = field(default_factory=ToolCall)


@dataclass
class StatusThinkingEvent:
    type: ClassVar[str] = "status_thinking"
    content: str = ""


@dataclass
class FinishEvent:
    type: ClassVar[str] = "finish"
    reason: str = "stop"
    usage: Usage | None = None


@dataclass
class ErrorEvent:
    type: ClassVar[str] = "error"
    error: str = ""
    kind: ErrorKind = ErrorKind.TRANSPORT


@dataclass
class ProgressStepEvent:
    """Human-readable milestone for run timelines."""

    type: ClassVar[str] = "progress_step"
    content: str = ""
    status: ProgressStatus = "running"
    category: ProgressCategory = "analysis"
    tool_name: str | None = None
    args: dict[str, Any] | None = None
    duration_ms: int | None = None
    error: str | None = None
    has_artifact_target: bool = False


@dataclass
class ResetEvent:
    """Tells the consumer to discard partial streamed content."""

    type: ClassVar[str] = "reset"
    reason: ResetReason = "plan_mode_rewrite"


@dataclass
class ToolResultEvent:
    type: ClassVar[str] = "tool_result"
    tool_result: ToolResult | None = None


@dataclass
class CompleteEvent:
    """Final event of a successful run."""

    type: ClassVar[str] = "complete"
    content: str = ""
    usage: Usage = field(default_factory=Usage)


StreamEvent = Union[
    TextEvent,
    ReasoningEvent,
    ToolCallEvent,
    StatusThinkingEvent,
    FinishEvent,
    ErrorEvent,
]

AgentEvent = Union[
    TextEvent,
    ReasoningEvent,
    ToolCallEvent,
    StatusThinkingEvent,
    ErrorEvent,
    ProgressStepEvent,
    ResetEvent,
    ToolResultEvent,
    CompleteEvent,
]
