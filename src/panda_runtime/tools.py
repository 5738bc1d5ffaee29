"""Agent tool set and the executor that dispatches it.

The tool set is fixed: ``read_files``, ``write_files`` and
``run_command``.  :func:`execute_tool` validates a model-issued call,
dispatches it to the host :class:`~panda_runtime.context.ToolContext`,
and always returns a :class:`ToolResult` -- malformed arguments, unknown
tools, handler exceptions and failed commands all end up in
``ToolResult.error`` instead of propagating.
"""

import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from panda_runtime.context import (
    CommandResult,
    FileContent,
    FileWrite,
    ToolContext,
    WriteOutcome,
)
from panda_runtime.errors import ToolArgumentsError
from panda_runtime.instrumentation import record_error, tool_span
from panda_runtime.streaming import ToolCall

logger = logging.getLogger(__name__)

ARTIFACT_TOOLS = frozenset({"write_files", "run_command"})


class ToolResult(BaseModel):
    tool_call_id: str
    tool_name: str
    parsed_args: dict[str, Any] = Field(default_factory=dict)
    output: str = ""
    error: str | None = None
    duration_ms: int = 0
    timestamp: float = 0.0

    def as_message_content(self) -> str:
        """Text fed back to the model as the ``tool`` message."""
        if self.error:
            return f"Error: {self.error}\n\nOutput: {self.output}"
        return self.output


class ReadFilesArgs(BaseModel):
    paths: list[str]


class WriteFilesArgs(BaseModel):
    files: list[FileWrite]


class RunCommandArgs(BaseModel):
    command: str = Field(min_length=1)
    timeout: int | None = Field(default=None, ge=1)
    cwd: str | None = None


# (output, error)
HandlerOutcome = tuple[str, str | None]


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict
    args_model: type[BaseModel]
    handler: Callable[[Any, ToolContext], Awaitable[HandlerOutcome]]

    def schema(self) -> dict:
        """Return an OpenAI-compatible function tool schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


async def _read_files(args: ReadFilesArgs, context: ToolContext) -> HandlerOutcome:
    results = [
        FileContent.model_validate(r)
        for r in await context.read_files(args.paths)
    ]
    return json.dumps([r.model_dump() for r in results], indent=2), None


async def _write_files(args: WriteFilesArgs, context: ToolContext) -> HandlerOutcome:
    results = [
        WriteOutcome.model_validate(r)
        for r in await context.write_files(args.files)
    ]
    output = json.dumps(
        [r.model_dump(exclude_none=True) for r in results], indent=2
    )
    failures = [r.path for r in results if not r.success]
    if failures:
        return output, (
            f"Failed to write {len(failures)} file(s): {', '.join(failures)}"
        )
    return output, None


async def _run_command(args: RunCommandArgs, context: ToolContext) -> HandlerOutcome:
    result = CommandResult.model_validate(
        await context.run_command(args.command, args.timeout, args.cwd)
    )
    output = json.dumps(
        {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exitCode": result.exit_code,
        },
        indent=2,
    )
    if result.exit_code != 0:
        return output, f"Command failed with exit code {result.exit_code}"
    return output, None


READ_FILES = Tool(
    name="read_files",
    description=(
        "Read the contents of one or more files. Use this to understand "
        "the codebase before making changes."
    ),
    parameters={
        "type": "object",
        "properties": {
            "paths": {
                "type": "array",
                "description": "Array of file paths to read",
                "items": {
                    "type": "string",
                    "description": "File path relative to project root",
                },
            },
        },
        "required": ["paths"],
    },
    args_model=ReadFilesArgs,
    handler=_read_files,
)

WRITE_FILES = Tool(
    name="write_files",
    description=(
        "Write or modify files. Provide complete file content, not diffs. "
        "Creates files if they don't exist."
    ),
    parameters={
        "type": "object",
        "properties": {
            "files": {
                "type": "array",
                "description": "Array of files to write",
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "File path relative to project root",
                        },
                        "content": {
                            "type": "string",
                            "description": "Complete file content to write",
                        },
                    },
                    "required": ["path", "content"],
                },
            },
        },
        "required": ["files"],
    },
    args_model=WriteFilesArgs,
    handler=_write_files,
)

RUN_COMMAND = Tool(
    name="run_command",
    description=(
        "Run a CLI command (tests, builds, linting, etc.). Use to verify "
        "changes work correctly."
    ),
    parameters={
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": 'Command to run (e.g., "pytest", "ruff check .")',
            },
            "timeout": {
                "type": "integer",
                "description": "Timeout in milliseconds (default: 30000)",
            },
            "cwd": {
                "type": "string",
                "description": "Working directory for command (default: project root)",
            },
        },
        "required": ["command"],
    },
    args_model=RunCommandArgs,
    handler=_run_command,
)

TOOL_REGISTRY: dict[str, Tool] = {
    t.name: t for t in (READ_FILES, WRITE_FILES, RUN_COMMAND)
}

AGENT_TOOLS: list[dict] = [t.schema() for t in TOOL_REGISTRY.values()]


def parse_arguments(raw: str) -> dict[str, Any]:
    """Decode a raw argument string into a JSON object.

    Raises:
        json.JSONDecodeError: If *raw* is not valid JSON.
        ToolArgumentsError: If it decodes to something other than an object,
            or nests too deeply to decode.
    """
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except RecursionError:
        raise ToolArgumentsError("arguments are nested too deeply to decode") from None
    if not isinstance(parsed, dict):
        raise ToolArgumentsError(
            f"arguments must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed


def try_parse_arguments(raw: str) -> dict[str, Any] | None:
    try:
        return parse_arguments(raw)
    except ValueError:
        return None


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


async def execute_tool(call: ToolCall, context: ToolContext) -> ToolResult:
    """Execute a single tool call against *context*.  Never raises."""
    timestamp = time.time()
    started = time.monotonic()
    parsed_args: dict[str, Any] = {}
    output = ""
    error: str | None = None

    async with tool_span(call.name, call.id) as span:
        tool = TOOL_REGISTRY.get(call.name)
        try:
            parsed_args = parse_arguments(call.arguments)
            if tool is not None:
                args = tool.args_model.model_validate(parsed_args)
        except ValidationError as e:
            error = f"Invalid arguments for {call.name}: {_format_validation_error(e)}"
        except ValueError as e:
            # JSONDecodeError and ToolArgumentsError
            error = f"Invalid JSON arguments for {call.name}: {e}"

        if error is None and tool is None:
            error = f"Unknown tool: {call.name}"

        if error is None:
            logger.info(f"Calling {call.name} with {parsed_args}")
            try:
                output, error = await tool.handler(args, context)
            except Exception as e:
                logger.error(f"Tool {call.name} raised: {e}")
                record_error(span, e)
                error = f"Error calling {call.name}: {e}"

    if error:
        logger.warning(f"Tool {call.name} ({call.id}) failed: {error}")

    return ToolResult(
        tool_call_id=call.id,
        tool_name=call.name,
        parsed_args=parsed_args,
        output=output,
        error=error,
        duration_ms=int((time.monotonic() - started) * 1000),
        timestamp=timestamp,
    )
