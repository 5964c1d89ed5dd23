"""Provider factory and registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from quorum.models import ProviderSpec
from quorum.providers.anthropic import AnthropicProvider
from quorum.providers.google import GoogleProvider
from quorum.providers.ollama import OllamaProvider
from quorum.providers.openai import OpenAIProvider

if TYPE_CHECKING:
    from quorum.config import AppConfig
    from quorum.providers.base import LLMProvider

_PROVIDERS: dict[str, type] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
    "ollama": OllamaProvider,
}

AVAILABLE_PROVIDERS = list(_PROVIDERS.keys())


def get_provider(name: str, config: AppConfig, *, model: str | None = None) -> LLMProvider:
    cls = _PROVIDERS.get(name)
    if cls is None:
        raise ValueError(f"Unknown provider '{name}'. Available: {', '.join(AVAILABLE_PROVIDERS)}")
    return cls(config, model=model)  # type: ignore[no-any-return]


def parse_provider_spec(value: str, timeout: float = 120.0) -> ProviderSpec:
    """Parse ``kind``, ``kind:model`` or ``name=kind:model`` into a :class:`ProviderSpec`.

    Without an explicit name the participant is named after the provider kind,
    or ``kind:model`` when a model is given.
    """
    name, sep, rest = value.partition("=")
    if not sep:
        rest, name = name, ""
    kind, _, model = rest.partition(":")
    kind = kind.strip()
    if kind not in _PROVIDERS:
        raise ValueError(f"Unknown provider '{kind}'. Available: {', '.join(AVAILABLE_PROVIDERS)}")
    model = model.strip() or None
    name = name.strip() or (f"{kind}:{model}" if model else kind)
    return ProviderSpec(name=name, provider=kind, model=model, timeout=timeout)


def build_providers(specs: list[ProviderSpec], config: AppConfig) -> dict[str, LLMProvider]:
    return {s.name: get_provider(s.provider, config, model=s.model) for s in specs}
