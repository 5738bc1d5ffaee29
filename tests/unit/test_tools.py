import json

import pytest

from panda_runtime.context import CommandResult, WriteOutcome
from panda_runtime.errors import ToolArgumentsError
from panda_runtime.streaming import ToolCall
from panda_runtime.tools import (
    AGENT_TOOLS,
    RunCommandArgs,
    ToolResult,
    execute_tool,
    parse_arguments,
    try_parse_arguments,
)

from tests.conftest import FakeToolContext, make_call


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


def test_agent_tools_are_function_schemas():
    names = [t["function"]["name"] for t in AGENT_TOOLS]
    assert names == ["read_files", "write_files", "run_command"]
    for schema in AGENT_TOOLS:
        assert schema["type"] == "function"
        assert schema["function"]["parameters"]["type"] == "object"


def test_run_command_requires_only_command():
    (run_command,) = [t for t in AGENT_TOOLS if t["function"]["name"] == "run_command"]
    assert run_command["function"]["parameters"]["required"] == ["command"]


def test_run_command_timeout_schema_matches_model():
    (run_command,) = [t for t in AGENT_TOOLS if t["function"]["name"] == "run_command"]
    timeout = run_command["function"]["parameters"]["properties"]["timeout"]

    assert timeout["type"] == "integer"
    assert RunCommandArgs.model_validate({"command": "make", "timeout": 1500}).timeout == 1500


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParseArguments:
    def test_empty_string_is_empty_object(self):
        assert parse_arguments("") == {}

    def test_non_object_raises(self):
        with pytest.raises(ToolArgumentsError, match="JSON object"):
            parse_arguments("[1, 2]")

    def test_try_parse_returns_none_on_garbage(self):
        assert try_parse_arguments("{not json") is None

    def test_try_parse_returns_dict(self):
        assert try_parse_arguments('{"a": 1}') == {"a": 1}

    def test_deeply_nested_raises_arguments_error(self):
        with pytest.raises(ToolArgumentsError, match="nested too deeply"):
            parse_arguments("[" * 100000)

    def test_try_parse_deeply_nested_is_none(self):
        assert try_parse_arguments("[" * 100000) is None


# ---------------------------------------------------------------------------
# execute_tool
# ---------------------------------------------------------------------------


class TestExecuteTool:
    @pytest.mark.asyncio
    async def test_read_files_returns_json_contents(self):
        ctx = FakeToolContext(files={"a.ts": "const a = 1"})
        result = await execute_tool(make_call("read_files", {"paths": ["a.ts", "b.ts"]}), ctx)

        assert result.error is None
        assert json.loads(result.output) == [
            {"path": "a.ts", "content": "const a = 1"},
            {"path": "b.ts", "content": None},
        ]
        assert result.parsed_args == {"paths": ["a.ts", "b.ts"]}
        assert result.tool_call_id == "call_1"
        assert result.tool_name == "read_files"

    @pytest.mark.asyncio
    async def test_write_files_success(self):
        ctx = FakeToolContext()
        call = make_call("write_files", {"files": [{"path": "x.py", "content": "x = 1\n"}]})
        result = await execute_tool(call, ctx)

        assert result.error is None
        assert json.loads(result.output) == [{"path": "x.py", "success": True}]
        assert ctx.writes[0].path == "x.py"

    @pytest.mark.asyncio
    async def test_write_files_failure_sets_error(self):
        ctx = FakeToolContext()

        async def failing_write(files):
            return [WriteOutcome(path=f.path, success=False, error="denied") for f in files]

        ctx.write_files = failing_write
        call = make_call("write_files", {"files": [{"path": "x.py", "content": ""}]})
        result = await execute_tool(call, ctx)

        assert result.error == "Failed to write 1 file(s): x.py"
        assert json.loads(result.output) == [{"path": "x.py", "success": False, "error": "denied"}]

    @pytest.mark.asyncio
    async def test_run_command_output_and_args(self):
        ctx = FakeToolContext()
        ctx.command_result = CommandResult(stdout="passed", stderr="", exit_code=0)
        call = make_call("run_command", {"command": "pytest", "timeout": 5000, "cwd": "pkg"})
        result = await execute_tool(call, ctx)

        assert result.error is None
        assert json.loads(result.output) == {"stdout": "passed", "stderr": "", "exitCode": 0}
        assert ctx.commands == [("pytest", 5000, "pkg")]

    @pytest.mark.asyncio
    async def test_run_command_nonzero_exit_sets_error(self):
        ctx = FakeToolContext()
        ctx.command_result = CommandResult(stdout="", stderr="boom", exit_code=2)
        result = await execute_tool(make_call("run_command", {"command": "make"}), ctx)

        assert result.error == "Command failed with exit code 2"
        assert json.loads(result.output)["stderr"] == "boom"

    @pytest.mark.asyncio
    async def test_malformed_json_never_raises(self):
        ctx = FakeToolContext()
        for name in ("read_files", "write_files", "run_command"):
            call = ToolCall(id="c1", name=name, arguments='{"paths": [')
            result = await execute_tool(call, ctx)

            assert isinstance(result, ToolResult)
            assert result.error.startswith(f"Invalid JSON arguments for {name}")
        assert ctx.read_log == [] and ctx.writes == [] and ctx.commands == []

    @pytest.mark.asyncio
    async def test_deeply_nested_json_never_raises(self):
        ctx = FakeToolContext()
        call = ToolCall(id="c1", name="read_files", arguments="[" * 100000)
        result = await execute_tool(call, ctx)

        assert result.error.startswith("Invalid JSON arguments for read_files")
        assert "nested too deeply" in result.error
        assert ctx.read_log == []

    @pytest.mark.asyncio
    async def test_schema_violation_reports_field(self):
        result = await execute_tool(make_call("read_files", {"paths": "a.ts"}), FakeToolContext())

        assert result.error.startswith("Invalid arguments for read_files: paths")

    @pytest.mark.asyncio
    async def test_empty_command_rejected(self):
        result = await execute_tool(make_call("run_command", {"command": ""}), FakeToolContext())

        assert "Invalid arguments for run_command" in result.error

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await execute_tool(make_call("delete_everything", {}), FakeToolContext())

        assert result.error == "Unknown tool: delete_everything"
        assert result.output == ""

    @pytest.mark.asyncio
    async def test_handler_exception_is_captured(self):
        ctx = FakeToolContext()

        async def broken_read(paths):
            raise RuntimeError("store offline")

        ctx.read_files = broken_read
        result = await execute_tool(make_call("read_files", {"paths": ["a.ts"]}), ctx)

        assert result.error == "Error calling read_files: store offline"

    @pytest.mark.asyncio
    async def test_records_timing(self):
        result = await execute_tool(make_call("read_files", {"paths": []}), FakeToolContext())

        assert result.duration_ms >= 0
        assert result.timestamp > 0


class TestToolResultMessageContent:
    def test_success_is_output(self):
        r = ToolResult(tool_call_id="c", tool_name="t", output="ok")
        assert r.as_message_content() == "ok"

    def test_error_includes_output(self):
        r = ToolResult(tool_call_id="c", tool_name="t", output="partial", error="bad")
        assert r.as_message_content() == "Error: bad\n\nOutput: partial"
