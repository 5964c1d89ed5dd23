"""Context budget management: keeps prompts within provider context windows."""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import NamedTuple

from quorum.models import BlockPriority, ContextBlock

CHARS_PER_TOKEN = 3.5
MIN_KEEP_CHARS = 100
OMISSION_MARKER = "[omitted: context budget exceeded]"
TRUNCATION_MARKER = "\n\n[...truncated to fit context budget]"


class ProviderLimits(NamedTuple):
    context_length: int
    output_reserve: int


PROVIDER_LIMITS: dict[str, ProviderLimits] = {
    "anthropic": ProviderLimits(200_000, 4_096),
    "kimi": ProviderLimits(262_144, 8_192),
    "ollama": ProviderLimits(8_192, 2_048),
    "openai": ProviderLimits(128_000, 4_096),
    "google": ProviderLimits(1_000_000, 8_192),
    "deepseek": ProviderLimits(128_000, 8_192),
    "mistral": ProviderLimits(128_000, 4_096),
}
DEFAULT_LIMITS = ProviderLimits(32_000, 4_096)


def estimate_tokens(text: str) -> int:
    """Rough token count, about 3.5 characters per token for English."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def available_input(provider_kind: str, system_prompt_tokens: int) -> int:
    """Input tokens left for a provider once output and the system prompt are reserved."""
    limits = PROVIDER_LIMITS.get(provider_kind, DEFAULT_LIMITS)
    return limits.context_length - limits.output_reserve - system_prompt_tokens


def _trim(text: str, max_chars: int) -> str:
    if max_chars >= len(text):
        return text
    if max_chars < MIN_KEEP_CHARS:
        return OMISSION_MARKER if len(OMISSION_MARKER) < len(text) else text
    return text[: max_chars - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def fit_to_budget(blocks: Iterable[ContextBlock], budget: int) -> dict[str, str]:
    """Fit labelled text blocks into ``budget`` tokens.

    Every block comes back intact when the total fits. Otherwise ``full``
    blocks are kept whole and ``trimmable`` blocks share whatever budget is
    left, each cut by the same ratio. A block that would keep fewer than
    ``MIN_KEEP_CHARS`` characters is replaced by an omission marker, or kept
    whole when it is shorter than the marker. No trimmable result is ever
    longer than its original text.
    """
    blocks = list(blocks)
    full = sum(estimate_tokens(b.text) for b in blocks if b.priority == BlockPriority.FULL)
    trimmable = sum(
        estimate_tokens(b.text) for b in blocks if b.priority == BlockPriority.TRIMMABLE
    )

    if full + trimmable <= budget:
        return {b.key: b.text for b in blocks}

    remaining = max(0, budget - full)
    ratio = remaining / trimmable if trimmable > 0 else 0.0

    result: dict[str, str] = {}
    for b in blocks:
        if b.priority == BlockPriority.FULL:
            result[b.key] = b.text
        else:
            result[b.key] = _trim(b.text, math.floor(len(b.text) * ratio))
    return result
