from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict, Field


class FileContent(BaseModel):
    path: str
    content: str | None = None


class FileWrite(BaseModel):
    path: str
    content: str


class WriteOutcome(BaseModel):
    path: str
    success: bool
    error: str | None = None


class CommandResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stdout: str = ""
    stderr: str = ""
    exit_code: int = Field(default=0, alias="exitCode")
    duration_ms: int = Field(default=0, alias="durationMs")


class ToolContext(ABC):
    """Host-supplied handlers behind the agent tools.

    The runtime never touches the filesystem or spawns processes itself;
    every tool call is dispatched to one of these methods.  A single
    instance may serve several concurrent runs, so implementations must
    tolerate independent concurrent calls.

    Example::

        class ProjectTools(ToolContext):
            async def read_files(self, paths):
                return [FileContent(path=p, content=db.get(p)) for p in paths]

            async def write_files(self, files):
                return [await stage(f) for f in files]

            async def run_command(self, command, timeout=None, cwd=None):
                return await jobs.execute(command, timeout, cwd)
    """

    @abstractmethod
    async def read_files(self, paths: list[str]) -> list[FileContent]:
        """Return one entry per path; missing files have ``content=None``."""

    @abstractmethod
    async def write_files(self, files: list[FileWrite]) -> list[WriteOutcome]:
        """Stage file writes for review.  Expected not to write immediately."""

    @abstractmethod
    async def run_command(
        self,
        command: str,
        timeout: int | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run *command* through the host's job service."""
