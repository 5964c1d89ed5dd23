"""Shared fakes for Quorum tests."""

from __future__ import annotations

import json
import re

import pytest

VOCAB = {
    "alpha": "Alpha approach is clearly superior overall.",
    "bravo": "Bravo strategy should dominate every benchmark.",
    "charlie": "Charlie method will deliver stronger results.",
    "delta": "Delta pattern must remain simple forever.",
}

SYNTHESIS_TEXT = (
    "## Synthesis\nMerged answer drawing on alpha and bravo.\n\n"
    "## Minority Report\nCharlie still prefers caution.\n\n"
    "## Scores\nConsensus: 0.8\nConfidence: 0.9"
)

_LABELS_RE = re.compile(r"positions to rank \(([A-Z, ]+)\)")


def default_reply(name: str, system_prompt: str, prompt: str) -> str:
    if "Vote on the best position" in system_prompt:
        m = _LABELS_RE.search(prompt)
        labels = [s.strip() for s in m.group(1).split(",")] if m else []
        rankings = [{"position": label, "rank": i + 1, "reason": "ok"} for i, label in enumerate(labels)]
        return "```json\n" + json.dumps({"rankings": rankings}) + "\n```"
    if "synthesizer" in system_prompt:
        return SYNTHESIS_TEXT
    if "critical thinker" in system_prompt:
        return "Contrary benchmark data would overturn this."
    return VOCAB.get(name, f"{name} offers another distinct perspective.")


class FakeProvider:
    """Scriptable stand-in for a provider gateway."""

    def __init__(self, name, reply=None, fail=None):
        self._name = name
        self.reply = reply or default_reply
        self.fail = fail
        self.calls: list[tuple[str | None, str]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def default_model(self) -> str:
        return "fake-model"

    async def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        self.calls.append((system_prompt, prompt))
        if self.fail is not None:
            raise self.fail
        return self.reply(self._name, system_prompt or "", prompt)


class StreamingFakeProvider(FakeProvider):
    def __init__(self, name, chunks=None, stream_error=None, **kwargs):
        super().__init__(name, **kwargs)
        self.chunks = chunks
        self.stream_error = stream_error
        self.stream_calls = 0

    async def stream(self, prompt: str, system_prompt: str | None = None):
        self.stream_calls += 1
        if self.stream_error is not None:
            raise self.stream_error
        chunks = self.chunks or [self.reply(self._name, system_prompt or "", prompt)]
        for chunk in chunks:
            yield chunk


@pytest.fixture()
def fakes():
    """Factory: fakes("alpha", "bravo") -> {"alpha": FakeProvider, ...}."""

    def make(*names, **overrides):
        return {n: overrides.get(n) or FakeProvider(n) for n in names}

    return make
