"""Ollama provider (local LLMs via HTTP API)."""

from __future__ import annotations

import json
from typing import AsyncIterator

import httpx

from quorum.config import AppConfig


class OllamaProvider:
    def __init__(self, config: AppConfig, model: str | None = None) -> None:
        self._config = config
        self._model = model
        self._base_url = config.ollama_base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def default_model(self) -> str:
        return self._model or self._config.get_default_model("ollama")

    def _payload(self, prompt: str, system_prompt: str | None, stream: bool) -> dict:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {"model": self.default_model, "messages": messages, "stream": stream}

    async def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        async with httpx.AsyncClient(timeout=self._config.provider_timeout) as client:
            resp = await client.post(
                f"{self._base_url}/api/chat", json=self._payload(prompt, system_prompt, False)
            )
            resp.raise_for_status()
            return resp.json()["message"]["content"]

    async def stream(self, prompt: str, system_prompt: str | None = None) -> AsyncIterator[str]:
        async with httpx.AsyncClient(timeout=self._config.provider_timeout) as client:
            async with client.stream(
                "POST", f"{self._base_url}/api/chat", json=self._payload(prompt, system_prompt, True)
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line:
                        continue
                    content = json.loads(line).get("message", {}).get("content", "")
                    if content:
                        yield content
