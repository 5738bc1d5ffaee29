from pydantic import BaseModel, Field

from panda_runtime.message import Message
from panda_runtime.tools import ToolResult
from panda_runtime.usage import Usage


class RunState(BaseModel):
    """Mutable state of one run.

    Created by :meth:`Runner.iter` and owned by it for the run's
    lifetime; never shared between runs or persisted.
    """

    messages: list[Message] = Field(default_factory=list)
    iteration: int = 0
    executed_call_fingerprints: set[str] = Field(default_factory=set)
    tool_call_pattern_history: list[str] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    is_complete: bool = False
    usage: Usage = Field(default_factory=Usage)
