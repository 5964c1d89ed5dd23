"""Provider gateway protocol, retry and timeout utilities."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

FIRST_CHUNK_TIMEOUT = 15.0
IDLE_CHUNK_TIMEOUT = 30.0


class EmptyResponseError(RuntimeError):
    """Raised when a provider answers with no text, even after a retry."""


_RETRYABLE_NAMES = (
    "timeout",
    "ratelimit",
    "rate_limit",
    "connection",
    "internalserver",
    "server_error",
    "503",
    "529",
)


def is_retryable(exc: BaseException) -> bool:
    """Check if an exception is transient and worth retrying."""
    name = type(exc).__name__.lower()
    msg = str(exc).lower()
    return any(r in name or r in msg for r in _RETRYABLE_NAMES)


def sanitize_secrets(text: str) -> str:
    """Strip API keys and tokens from error text."""
    text = re.sub(r"(sk-[A-Za-z0-9_-]{8})[A-Za-z0-9_-]+", r"\1...", text)
    text = re.sub(r"(key-[A-Za-z0-9]{8})[A-Za-z0-9]+", r"\1...", text)
    text = re.sub(r"(AIza[A-Za-z0-9_-]{8})[A-Za-z0-9_-]+", r"\1...", text)
    text = re.sub(r"(ya29\.)[A-Za-z0-9_.-]+", r"\1...", text)
    text = re.sub(r"(Bearer\s+)[A-Za-z0-9_./+-]+", r"\1[REDACTED]", text)
    return text


def format_provider_error(error: BaseException) -> tuple[str, str]:
    """Classify a provider exception: returns (category, concise sanitized message)."""
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return "timeout", "Provider did not respond in time."
    if isinstance(error, EmptyResponseError):
        return "empty", str(error)

    msg = sanitize_secrets(str(error))
    lower = msg.lower()

    if "404" in msg or "not_found" in lower or "does not exist" in lower:
        for pattern in (r"The model `([^`]+)`", r"model:\s*(\S+)", r"models/([^\s`'\"]+)"):
            m = re.search(pattern, msg)
            if m:
                return "not-found", f"Model '{m.group(1).rstrip('`')}' not found."
        return "not-found", "Model not found. Check the model name with your provider."
    if "401" in msg or "unauthorized" in lower or "api key" in lower:
        return "auth", "Authentication failed. Check your API key."
    if "403" in msg or "forbidden" in lower or "permission" in lower:
        return "permission", "Permission denied. Check your API key permissions or account access."
    if "quota" in lower or "billing" in lower or "insufficient" in lower:
        return "quota", "Quota exceeded or billing issue."
    if "rate" in lower and "limit" in lower:
        return "rate-limit", "Rate limited by the provider."
    if "connection" in lower or ("connect" in lower and "refused" in lower):
        return "connection", "Connection failed. Check that the service is reachable."

    first = msg.strip().split("\n")[0].strip() if msg.strip() else type(error).__name__
    json_start = first.find("{'")
    if json_start > 20:
        first = first[:json_start].strip().rstrip(".-")
    if len(first) > 200:
        first = first[:200] + "..."
    return "error", first


async def retry_with_backoff(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    max_retries: int = 1,
    base_delay: float = 2.0,
    **kwargs: Any,
) -> Any:
    """Call an async function with exponential backoff on transient errors."""
    last_exc: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            return await fn(*args, **kwargs)
        except (TimeoutError, ConnectionError, OSError) as e:
            last_exc = e
        except Exception as e:
            if is_retryable(e):
                last_exc = e
            else:
                raise
        if attempt < max_retries:
            delay = base_delay * (2**attempt) + random.uniform(0, base_delay)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt + 1, max_retries, delay, sanitize_secrets(str(last_exc)),
            )
            await asyncio.sleep(delay)
    raise last_exc  # type: ignore[misc]


async def generate_with_timeout(
    provider: LLMProvider, prompt: str, system_prompt: str | None, timeout: float
) -> str:
    """One ``generate`` call bounded by ``timeout`` seconds."""
    return await asyncio.wait_for(provider.generate(prompt, system_prompt=system_prompt), timeout)


async def collect_stream(
    chunks: AsyncIterator[str],
    on_chunk: Callable[[str], None] | None = None,
    *,
    first_chunk_timeout: float = FIRST_CHUNK_TIMEOUT,
    idle_timeout: float = IDLE_CHUNK_TIMEOUT,
    total_timeout: float | None = None,
) -> str:
    """Drain a text stream, returning what arrived before a stall.

    The first chunk must arrive within ``first_chunk_timeout`` seconds and each
    later chunk within ``idle_timeout``. When ``total_timeout`` is given the
    whole stream is also cut off that many seconds after it started. On a
    stall or an expired deadline the accumulated text is returned (empty if
    nothing arrived). The stream is always closed, so the
    underlying SDK or HTTP stream is released.
    """
    parts: list[str] = []
    iterator = chunks.__aiter__()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + total_timeout if total_timeout is not None else None
    try:
        while True:
            timeout = idle_timeout if parts else first_chunk_timeout
            overall = False
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= timeout:
                    timeout, overall = max(remaining, 0), True
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout)
            except StopAsyncIteration:
                break
            except TimeoutError:
                if overall:
                    logger.warning(
                        "Stream exceeded %.1fs after %d chunk(s); keeping partial response",
                        total_timeout, len(parts),
                    )
                else:
                    logger.warning(
                        "Stream stalled after %d chunk(s); keeping partial response", len(parts)
                    )
                break
            parts.append(chunk)
            if on_chunk:
                on_chunk(chunk)
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
    return "".join(parts)


@runtime_checkable
class LLMProvider(Protocol):
    """Gateway to one provider. ``stream`` is optional; see :func:`supports_streaming`."""

    @property
    def name(self) -> str: ...

    @property
    def default_model(self) -> str: ...

    async def generate(self, prompt: str, system_prompt: str | None = None) -> str: ...


def supports_streaming(provider: LLMProvider) -> bool:
    return callable(getattr(provider, "stream", None))
