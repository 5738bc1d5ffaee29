"""System prompts and message assembly for the two chat modes."""

from pydantic import BaseModel, Field

from panda_runtime.guardrails import ChatMode
from panda_runtime.message import Message, system, user

DISCUSS_SYSTEM_PROMPT = """\
You are a software architect helping plan changes to a project.

You are in Plan Mode. Do not write code and do not use fenced code blocks.
Describe what should change and why, in prose and short lists.

Structure every answer with these sections:

### Clarifying Questions
Questions whose answers would change the plan. Omit if there are none.

### Proposed Plan
Numbered steps naming the files and components involved.

### Risks
What could go wrong and how to check for it.

### Next Step
The single action to take first.
"""

BUILD_SYSTEM_PROMPT = """\
You are a software engineer implementing changes in a project.

You are in Build Mode. Make changes with the tools, not in chat:
- read_files: read files before editing them.
- write_files: write complete file contents; never partial snippets.
- run_command: run builds, tests and linters to validate your work.

Rules:
- Never put fenced code blocks in your chat reply. Code belongs in write_files.
- When the user asks you to build or implement something, act immediately
  with tools instead of describing a plan.
- Keep the chat reply to a short summary of what changed and what to do next.
"""


class ProjectFile(BaseModel):
    path: str
    content: str | None = None


class PromptContext(BaseModel):
    """Everything needed to build the opening message list of a run."""

    project_name: str
    project_description: str | None = None
    files: list[ProjectFile] = Field(default_factory=list)
    chat_mode: ChatMode = ChatMode.DISCUSS
    previous_messages: list[Message] = Field(default_factory=list)
    user_message: str


def get_system_prompt(mode: ChatMode) -> str:
    return BUILD_SYSTEM_PROMPT if mode == ChatMode.BUILD else DISCUSS_SYSTEM_PROMPT


def _project_context(context: PromptContext) -> str:
    text = f"Project: {context.project_name}"
    if context.project_description:
        text += f"\nDescription: {context.project_description}"
    if not context.files:
        return text

    if context.chat_mode == ChatMode.BUILD:
        text += "\n\nCurrent files in project:\n"
    else:
        text += "\n\nRelevant files:\n"
    for f in context.files:
        text += f"\n--- {f.path} ---\n"
        text += f.content if f.content is not None else "[File content not loaded]"
        text += "\n"
    return text.rstrip("\n")


def build_messages(context: PromptContext) -> list[Message]:
    """System prompt, project context, prior turns, then the user message."""
    messages = [
        system(get_system_prompt(context.chat_mode)),
        system(_project_context(context)),
    ]
    messages.extend(m.model_copy(deep=True) for m in context.previous_messages)
    if context.user_message.strip():
        messages.append(user(context.user_message))
    return messages
