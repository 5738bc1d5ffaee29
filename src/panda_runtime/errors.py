"""Exception types and the error taxonomy reported to consumers."""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Category carried by every terminal ``ErrorEvent``."""

    TRANSPORT = "transport"
    EMPTY_RESPONSE = "empty_response"
    LOOP_DETECTED = "loop_detected"
    MAX_ITERATIONS = "max_iterations"
    INVALID_PROMPT = "invalid_prompt"
    INTERNAL = "internal"


class PandaRuntimeError(Exception):
    """Base class for errors raised inside panda_runtime."""


class EmptyPromptError(PandaRuntimeError, ValueError):
    """Raised when message filtering leaves nothing to send."""


class ToolArgumentsError(PandaRuntimeError, ValueError):
    """Raised when tool-call arguments are not a decodable JSON object."""


@dataclass
class ProviderError(PandaRuntimeError):
    """Raised when a provider request fails at the HTTP level."""

    status_code: int | None
    message: str
    response_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message
