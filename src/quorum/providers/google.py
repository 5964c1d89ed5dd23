"""Google Gemini provider."""

from __future__ import annotations

from typing import AsyncIterator

from google import genai
from google.genai.types import GenerateContentConfig

from quorum.config import AppConfig

MAX_TOKENS = 8192


class GoogleProvider:
    def __init__(self, config: AppConfig, model: str | None = None) -> None:
        self._config = config
        self._model = model
        self._client = genai.Client(api_key=config.get_api_key("google"))

    @property
    def name(self) -> str:
        return "google"

    @property
    def default_model(self) -> str:
        return self._model or self._config.get_default_model("google")

    def _config_for(self, system_prompt: str | None) -> GenerateContentConfig:
        cfg_kwargs: dict = {"max_output_tokens": MAX_TOKENS}
        if system_prompt:
            cfg_kwargs["system_instruction"] = system_prompt
        return GenerateContentConfig(**cfg_kwargs)

    async def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        resp = await self._client.aio.models.generate_content(
            model=self.default_model,
            contents=prompt,
            config=self._config_for(system_prompt),
        )
        return resp.text or ""

    async def stream(self, prompt: str, system_prompt: str | None = None) -> AsyncIterator[str]:
        response = await self._client.aio.models.generate_content_stream(
            model=self.default_model,
            contents=prompt,
            config=self._config_for(system_prompt),
        )
        async for chunk in response:
            if chunk.text:
                yield chunk.text
