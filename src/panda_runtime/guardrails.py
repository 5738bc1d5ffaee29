"""Output contracts for the two chat modes.

Discuss mode answers must not contain fenced code blocks.  Build mode
answers must not either (code goes through ``write_files``), and when
the user clearly asked for execution the answer must not be a bare plan
with no tool calls.  A violation produces a :class:`RewriteDirective`;
the runner performs one rewrite pass per iteration and accepts its
output whatever it contains.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from panda_runtime.streaming import ToolCall

FENCE = "```"


class ChatMode(str, Enum):
    DISCUSS = "discuss"
    BUILD = "build"


def find_fence(buffer: str, chunk: str) -> int | None:
    """Scan ``buffer + chunk`` for a code fence.

    Returns the number of leading characters of *chunk* that are safe to
    forward, or ``None`` when no fence is present.
    """
    index = (buffer + chunk).find(FENCE)
    if index == -1:
        return None
    return max(0, index - len(buffer))


def should_rewrite_discuss_response(content: str) -> bool:
    return FENCE in content


def should_rewrite_build_response(content: str) -> bool:
    return FENCE in content


class ExecutionIntentPolicy(ABC):
    """Decides whether a build-mode answer planned instead of acting."""

    @abstractmethod
    def wants_execution(self, user_message: str) -> bool: ...

    @abstractmethod
    def looks_like_plan(self, content: str) -> bool: ...

    def is_plan_only(
        self, user_message: str, content: str, tool_calls: list[ToolCall]
    ) -> bool:
        if tool_calls:
            return False
        return self.wants_execution(user_message) and self.looks_like_plan(content)


class KeywordExecutionPolicy(ExecutionIntentPolicy):
    """English keyword heuristic.

    Matches execution verbs in the user message and plan-section markers
    in the answer.  Replace it with a custom policy for other languages.
    """

    EXECUTION_VERBS = re.compile(
        r"(build|implement|create|start|proceed|go ahead|let'?s do|do it|make it)"
    )
    PLAN_MARKERS = (
        "### Proposed Plan",
        "### Next Step",
        "Clarifying Questions",
        "### Risks",
    )
    PLAN_PHRASE = re.compile(r"I will begin by", re.IGNORECASE)

    def wants_execution(self, user_message: str) -> bool:
        return bool(self.EXECUTION_VERBS.search((user_message or "").lower()))

    def looks_like_plan(self, content: str) -> bool:
        if any(marker in content for marker in self.PLAN_MARKERS):
            return True
        return bool(self.PLAN_PHRASE.search(content))


@dataclass(frozen=True)
class RewriteDirective:
    """How to run the corrective pass for one violation."""

    reason: str
    status: str
    progress: str
    preamble: str
    tools_enabled: bool

    def instruction(self, previous_answer: str) -> str:
        """Corrective user message quoting the violating answer."""
        return f"{self.preamble}\n\nPrevious answer:\n{previous_answer}"


PLAN_MODE_REWRITE = RewriteDirective(
    reason="plan_mode_rewrite",
    status="Plan Mode: rewriting response into a plan (no code)...",
    progress="Plan mode guardrail triggered: rewriting response into plan format",
    preamble=(
        "Rewrite your previous answer into Plan Mode format. Do not include "
        "any fenced code blocks. Follow the required Plan Mode structure "
        "(clarifying questions, proposed plan, risks, next step)."
    ),
    tools_enabled=False,
)

BUILD_MODE_REWRITE = RewriteDirective(
    reason="build_mode_rewrite",
    status="Build Mode: rewriting response to use artifacts (no code blocks)...",
    progress="Build mode guardrail triggered: rewriting response to execute via tools",
    preamble=(
        "Your previous answer included fenced code blocks or only described "
        "a plan, neither of which is allowed in Build Mode. Execute the work "
        "now using tools only:\n"
        "- Use read_files to inspect context as needed.\n"
        "- Use write_files to apply code changes (complete file contents).\n"
        "- Use run_command to validate.\n"
        "In chat, output only a short summary and next steps. Do not include "
        "any fenced code blocks."
    ),
    tools_enabled=True,
)


class Guardrail:
    """Evaluates a finished (or interrupted) pass against the mode contract."""

    def __init__(self, policy: ExecutionIntentPolicy | None = None):
        self.policy = policy or KeywordExecutionPolicy()

    def evaluate(
        self,
        mode: ChatMode,
        user_message: str,
        content: str,
        tool_calls: list[ToolCall],
        fence_seen: bool = False,
    ) -> RewriteDirective | None:
        if mode == ChatMode.DISCUSS:
            if fence_seen or should_rewrite_discuss_response(content):
                return PLAN_MODE_REWRITE
            return None

        if fence_seen or should_rewrite_build_response(content):
            return BUILD_MODE_REWRITE
        if self.policy.is_plan_only(user_message, content, tool_calls):
            return BUILD_MODE_REWRITE
        return None
