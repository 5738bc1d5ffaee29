"""Token usage accounting.

Providers report usage on their ``finish`` event.  Some backends stream
without usage, so the estimators here give a rough chars-per-token
figure that keeps run totals meaningful.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

_ROLE_OVERHEAD_PER_MESSAGE = 4
_ASSISTANT_PRIMING_OVERHEAD = 2


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def of(cls, prompt_tokens: int | None, completion_tokens: int | None) -> Usage:
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )


def _tokens_per_char(provider_type: str, model: str) -> float:
    normalized = model.lower()
    if provider_type == "anthropic" or "claude" in normalized:
        return 1 / 3.6
    if provider_type == "zai" or "glm" in normalized:
        return 1 / 3.8
    if provider_type in ("openrouter", "together"):
        return 1 / 4.1
    return 1 / 4


def estimate_text_tokens(text: str, provider_type: str, model: str) -> int:
    trimmed = text.strip()
    if not trimmed:
        return 0
    words = len(trimmed.split())
    base = len(trimmed) * _tokens_per_char(provider_type, model)
    return max(1, math.ceil(base + words * 0.08))


def estimate_prompt_tokens(
    contents: Iterable[str], provider_type: str, model: str
) -> int:
    total = _ASSISTANT_PRIMING_OVERHEAD
    for content in contents:
        total += _ROLE_OVERHEAD_PER_MESSAGE
        total += estimate_text_tokens(content, provider_type, model)
    return max(1, total)


def estimate_usage(
    prompt_contents: Iterable[str],
    completion: str,
    provider_type: str,
    model: str,
) -> Usage:
    return Usage.of(
        estimate_prompt_tokens(prompt_contents, provider_type, model),
        estimate_text_tokens(completion, provider_type, model),
    )
