"""OpenAI provider."""

from __future__ import annotations

from typing import AsyncIterator

from openai import AsyncOpenAI

from quorum.config import AppConfig

MAX_TOKENS = 4096


class OpenAIProvider:
    def __init__(self, config: AppConfig, model: str | None = None) -> None:
        self._config = config
        self._model = model
        self._client = AsyncOpenAI(api_key=config.get_api_key("openai"))

    @property
    def name(self) -> str:
        return "openai"

    @property
    def default_model(self) -> str:
        return self._model or self._config.get_default_model("openai")

    def _messages(self, prompt: str, system_prompt: str | None) -> list[dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        resp = await self._client.chat.completions.create(
            model=self.default_model,
            messages=self._messages(prompt, system_prompt),
            max_completion_tokens=MAX_TOKENS,
        )
        return resp.choices[0].message.content or ""

    async def stream(self, prompt: str, system_prompt: str | None = None) -> AsyncIterator[str]:
        resp = await self._client.chat.completions.create(
            model=self.default_model,
            messages=self._messages(prompt, system_prompt),
            max_completion_tokens=MAX_TOKENS,
            stream=True,
        )
        async for chunk in resp:
            if chunk.choices:
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
