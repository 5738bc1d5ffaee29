"""Staged tool execution for review-before-apply hosts.

:class:`StagingToolContext` is a ready-made
:class:`~panda_runtime.context.ToolContext`.  File writes are never
applied directly: each becomes a pending ``file_write`` artifact
carrying the original content so the host can show a diff.  Commands
are recorded as ``command_run`` artifacts and then executed through a
:class:`JobRunner`, whose result is returned to the model.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from panda_runtime.context import (
    CommandResult,
    FileContent,
    FileWrite,
    ToolContext,
    WriteOutcome,
)

logger = logging.getLogger(__name__)

ArtifactType = Literal["file_write", "command_run"]
ArtifactStatus = Literal["pending", "applied", "rejected"]
JobType = Literal["cli", "build", "test", "deploy", "lint", "format"]


class ArtifactAction(BaseModel):
    type: ArtifactType
    payload: dict[str, Any]


class Artifact(BaseModel):
    id: str = Field(default_factory=lambda: f"artifact-{uuid.uuid4().hex[:12]}")
    chat_id: str | None = None
    actions: list[ArtifactAction]
    status: ArtifactStatus = "pending"
    description: str = ""
    created_at: float = Field(default_factory=time.time)


class ArtifactSink(ABC):
    @abstractmethod
    async def add(self, artifact: Artifact) -> None:
        """Persist or enqueue *artifact*; raise to signal failure."""


class ArtifactQueue(ArtifactSink):
    """In-memory sink; artifacts stay pending until the host resolves them."""

    def __init__(self):
        self.artifacts: list[Artifact] = []

    async def add(self, artifact: Artifact) -> None:
        self.artifacts.append(artifact)

    def pending(self) -> list[Artifact]:
        return [a for a in self.artifacts if a.status == "pending"]

    def resolve(self, artifact_id: str, status: ArtifactStatus) -> Artifact:
        for artifact in self.artifacts:
            if artifact.id == artifact_id:
                artifact.status = status
                return artifact
        raise KeyError(f"Artifact '{artifact_id}' not found")


class FileStore(ABC):
    @abstractmethod
    async def get_many(self, paths: list[str]) -> dict[str, str | None]:
        """Map each path to its stored content, ``None`` if absent."""


class InMemoryFileStore(FileStore):
    def __init__(self, files: dict[str, str] | None = None):
        self.files = dict(files or {})

    async def get_many(self, paths: list[str]) -> dict[str, str | None]:
        return {p: self.files.get(p) for p in paths}


class JobRunner(ABC):
    @abstractmethod
    async def execute(
        self,
        command: str,
        timeout_ms: int | None = None,
        working_directory: str | None = None,
    ) -> CommandResult:
        ...


class HttpJobRunner(JobRunner):
    """Posts commands to a host job endpoint.

    The endpoint receives ``{command, workingDirectory, timeoutMs}`` and
    answers ``{stdout, stderr, exitCode, durationMs}``.  Any HTTP or
    transport failure is reported as a result with ``exitCode`` 1.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 330.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.headers = headers or {}
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def execute(
        self,
        command: str,
        timeout_ms: int | None = None,
        working_directory: str | None = None,
    ) -> CommandResult:
        started = time.monotonic()
        body = {
            "command": command,
            "workingDirectory": working_directory,
            "timeoutMs": timeout_ms,
        }
        try:
            response = await self.client.post(
                self.endpoint, json=body, headers=self.headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Job request failed for '{command}': {e}")
            return CommandResult(
                stderr=str(e) or type(e).__name__,
                exit_code=1,
                duration_ms=_elapsed_ms(started),
            )

        if response.is_error:
            logger.warning(
                f"Job endpoint returned {response.status_code} for '{command}'"
            )
            return CommandResult(
                stderr=response.text,
                exit_code=1,
                duration_ms=_elapsed_ms(started),
            )

        payload = response.json()
        if payload.get("timedOut"):
            logger.warning(f"Command timed out: {command}")
        return CommandResult.model_validate(payload)


def classify_job(command: str) -> JobType:
    """Coarse job category used for artifact descriptions."""
    lowered = command.lower()
    if "build" in lowered or "compile" in lowered:
        return "build"
    if "test" in lowered:
        return "test"
    if "deploy" in lowered:
        return "deploy"
    if "lint" in lowered:
        return "lint"
    if "format" in lowered:
        return "format"
    return "cli"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class StagingToolContext(ToolContext):
    """ToolContext that stages writes and commands as artifacts.

    Args:
        files: Source of current file contents.
        sink: Where artifacts are queued.
        jobs: Executes ``run_command`` calls.  Without one, commands are
            only queued and the model is told so.
        chat_id: Attached to every artifact.
    """

    def __init__(
        self,
        files: FileStore,
        sink: ArtifactSink,
        jobs: JobRunner | None = None,
        chat_id: str | None = None,
    ):
        self.files = files
        self.sink = sink
        self.jobs = jobs
        self.chat_id = chat_id

    async def read_files(self, paths: list[str]) -> list[FileContent]:
        try:
            found = await self.files.get_many(paths)
        except Exception as e:
            logger.error(f"Failed to read files: {e}")
            return [FileContent(path=p) for p in paths]
        return [FileContent(path=p, content=found.get(p)) for p in paths]

    async def write_files(self, files: list[FileWrite]) -> list[WriteOutcome]:
        try:
            originals = await self.files.get_many([f.path for f in files])
        except Exception as e:
            logger.error(f"Failed to fetch original contents for write_files: {e}")
            originals = {}

        outcomes = []
        for f in files:
            artifact = Artifact(
                chat_id=self.chat_id,
                description=f"File write: {f.path}",
                actions=[
                    ArtifactAction(
                        type="file_write",
                        payload={
                            "filePath": f.path,
                            "content": f.content,
                            "originalContent": originals.get(f.path),
                        },
                    )
                ],
            )
            try:
                await self.sink.add(artifact)
            except Exception as e:
                logger.error(f"Failed to queue artifact for {f.path}: {e}")
                outcomes.append(
                    WriteOutcome(path=f.path, success=False, error=str(e))
                )
                continue
            outcomes.append(WriteOutcome(path=f.path, success=True))
        return outcomes

    async def run_command(
        self,
        command: str,
        timeout: int | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        started = time.monotonic()
        artifact = Artifact(
            chat_id=self.chat_id,
            description=f"Command ({classify_job(command)}): {command}",
            actions=[
                ArtifactAction(
                    type="command_run",
                    payload={"command": command, "workingDirectory": cwd},
                )
            ],
        )
        try:
            await self.sink.add(artifact)
        except Exception as e:
            logger.error(f"Failed to queue command artifact: {e}")
            return CommandResult(
                stderr=str(e), exit_code=1, duration_ms=_elapsed_ms(started)
            )

        if self.jobs is None:
            return CommandResult(
                stdout=f"Command queued for execution as {artifact.id}.",
                duration_ms=_elapsed_ms(started),
            )
        return await self.jobs.execute(command, timeout, cwd)
