import logging
import time
from dataclasses import dataclass, field

from panda_runtime.anthropic import AnthropicProvider
from panda_runtime.config import ProviderConfig, ProviderType
from panda_runtime.provider import (
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
    TogetherProvider,
)
from panda_runtime.zai import ZaiProvider

logger = logging.getLogger(__name__)


def create_provider(config: ProviderConfig) -> ModelProvider:
    """Build the adapter selected by ``config.provider``."""
    capabilities = config.resolved_capabilities()
    common = {
        "timeout": config.timeout,
        "default_headers": config.custom_headers or None,
        "capabilities": capabilities,
    }

    if config.provider == ProviderType.ANTHROPIC:
        return AnthropicProvider(
            api_key=config.api_key, base_url=config.base_url, **common
        )
    if config.provider == ProviderType.ZAI:
        return ZaiProvider(
            api_key=config.api_key, base_url=config.base_url, **common
        )

    common["max_retries"] = config.max_retries
    if config.base_url:
        return OpenAICompatibleProvider(
            base_url=config.base_url, api_key=config.api_key, **common
        )
    if config.provider == ProviderType.OPENAI:
        return OpenAIProvider(api_key=config.api_key, **common)
    if config.provider == ProviderType.OPENROUTER:
        return OpenRouter(api_key=config.api_key, **common)
    if config.provider == ProviderType.TOGETHER:
        return TogetherProvider(api_key=config.api_key, **common)
    raise ValueError(
        f"Provider type '{config.provider.value}' requires a base_url"
    )


@dataclass
class _Entry:
    provider: ModelProvider
    config: ProviderConfig
    created_at: float = field(default_factory=time.time)


class ProviderRegistry:
    """Named provider instances with an optional default."""

    def __init__(self):
        self._entries: dict[str, _Entry] = {}
        self._default_id: str | None = None

    def create(
        self, provider_id: str, config: ProviderConfig, set_default: bool = False
    ) -> ModelProvider:
        provider = create_provider(config)
        self._entries[provider_id] = _Entry(provider=provider, config=config)
        if set_default:
            self._default_id = provider_id
        logger.info(f"Registered provider '{provider_id}' ({config.provider.value})")
        return provider

    def get(self, provider_id: str) -> ModelProvider | None:
        entry = self._entries.get(provider_id)
        return entry.provider if entry else None

    def get_config(self, provider_id: str) -> ProviderConfig | None:
        entry = self._entries.get(provider_id)
        return entry.config if entry else None

    def default(self) -> ModelProvider | None:
        if self._default_id is None:
            first = next(iter(self._entries.values()), None)
            return first.provider if first else None
        return self.get(self._default_id)

    def set_default(self, provider_id: str) -> None:
        if provider_id not in self._entries:
            raise KeyError(f"Provider '{provider_id}' not found")
        self._default_id = provider_id

    def remove(self, provider_id: str) -> bool:
        if self._default_id == provider_id:
            self._default_id = None
        return self._entries.pop(provider_id, None) is not None

    def list_providers(self) -> list[dict]:
        return [
            {
                "id": provider_id,
                "type": entry.config.provider.value,
                "created_at": entry.created_at,
            }
            for provider_id, entry in self._entries.items()
        ]
