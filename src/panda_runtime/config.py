"""Configuration models for providers and the runtime loop."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class ProviderType(str, Enum):
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    TOGETHER = "together"
    ANTHROPIC = "anthropic"
    ZAI = "zai"
    CUSTOM = "custom"


class ReasoningOptions(BaseModel):
    """Normalized reasoning / extended-thinking request."""

    enabled: bool = False
    budget_tokens: int | None = Field(default=None, ge=1)
    effort: Literal["low", "medium", "high", "max"] | None = None


class ProviderCapabilities(BaseModel):
    """Capability flags used to gate optional request features."""

    supports_reasoning: bool = False


def default_capabilities(provider: ProviderType) -> ProviderCapabilities:
    if provider in (ProviderType.ANTHROPIC, ProviderType.ZAI):
        return ProviderCapabilities(supports_reasoning=True)
    return ProviderCapabilities()


class ProviderConfig(BaseModel):
    """Selects and configures one provider adapter.

    ``api_key`` may be omitted; each adapter then reads its own
    environment variable (``OPENAI_API_KEY``, ``ANTHROPIC_API_KEY``, ...).
    """

    provider: ProviderType
    api_key: str | None = None
    base_url: str | None = None
    default_model: str | None = None
    timeout: float = 600.0
    max_retries: int = 5
    custom_headers: dict[str, str] = Field(default_factory=dict)
    capabilities: ProviderCapabilities | None = None

    def resolved_capabilities(self) -> ProviderCapabilities:
        return self.capabilities or default_capabilities(self.provider)


class RuntimeOptions(BaseModel):
    """Per-run model request options."""

    model: str = "gpt-4o"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    reasoning: ReasoningOptions | None = None


class RuntimeConfig(BaseModel):
    """Bounds on the iterate / tool-call loop."""

    max_iterations: int = Field(default=10, ge=1)
    max_tool_calls_per_iteration: int = Field(default=50, ge=1)
    enable_tool_deduplication: bool = True
    tool_loop_threshold: int = Field(default=3, ge=2)
