"""Application configuration via environment variables."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

QUORUM_CONFIG_DIR = Path.home() / ".quorum"
QUORUM_CONFIG_FILE = QUORUM_CONFIG_DIR / "config"

logger = logging.getLogger(__name__)


def _check_config_permissions(path: Path) -> None:
    """Warn if the global config file is readable by group or others."""
    mode = os.stat(path).st_mode
    if mode & (stat.S_IRGRP | stat.S_IROTH):
        logger.warning(
            "%s is readable by other users (mode %o). Run: chmod 600 %s",
            path, stat.S_IMODE(mode), path,
        )


def load_quorum_config(config_file: Path | None = None) -> None:
    """Load configuration from all sources.

    Priority (highest wins): env vars > .env (local) > ~/.quorum/config (global).
    ``load_dotenv(override=False)`` only sets variables that are not already
    present, so sources are loaded highest priority first.
    """
    load_dotenv(override=False)
    config_file = config_file or QUORUM_CONFIG_FILE
    if config_file.is_file():
        _check_config_permissions(config_file)
        load_dotenv(config_file, override=False)


_DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-20250514",
    "google": "gemini-2.0-flash",
    "ollama": "llama3.2",
}


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="QUORUM_")

    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434"
    default_providers: str = ""
    sessions_dir: str = "./quorum-sessions"
    provider_timeout: float = 120.0
    max_retries: int = 1
    retry_delay: float = 2.0
    stats_file: str = str(QUORUM_CONFIG_DIR / "adaptive-stats.json")

    def get_api_key(self, provider: str) -> str:
        key_map: dict[str, str] = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
        }
        return key_map.get(provider, "")

    def get_default_providers(self) -> list[str]:
        if self.default_providers:
            return [p.strip() for p in self.default_providers.split(",") if p.strip()]
        return ["openai", "anthropic", "google"]

    def get_default_model(self, provider: str) -> str:
        return _DEFAULT_MODELS.get(provider, "")

    @property
    def stats_path(self) -> Path:
        return Path(self.stats_file).expanduser()
