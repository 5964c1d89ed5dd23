"""Anthropic provider."""

from __future__ import annotations

from typing import AsyncIterator

import anthropic

from quorum.config import AppConfig

MAX_TOKENS = 4096


class AnthropicProvider:
    def __init__(self, config: AppConfig, model: str | None = None) -> None:
        self._config = config
        self._model = model
        self._client = anthropic.AsyncAnthropic(api_key=config.get_api_key("anthropic"))

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def default_model(self) -> str:
        return self._model or self._config.get_default_model("anthropic")

    def _request(self, prompt: str, system_prompt: str | None) -> dict:
        kwargs: dict = {
            "model": self.default_model,
            "max_tokens": MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        return kwargs

    async def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        resp = await self._client.messages.create(**self._request(prompt, system_prompt))
        return "".join(block.text for block in resp.content if block.type == "text")

    async def stream(self, prompt: str, system_prompt: str | None = None) -> AsyncIterator[str]:
        async with self._client.messages.stream(**self._request(prompt, system_prompt)) as stream:
            async for text in stream.text_stream:
                yield text
