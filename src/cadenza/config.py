from __future__ import annotations

import logging
from functools import cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cadenza.errors import MissingCredentialError

LOG_FORMAT = "%(asctime)s:%(name)s:%(levelname)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

PROVIDER_LABELS = {
    "openai": "OpenAI",
    "google": "Google AI",
    "grok": "Grok",
    "perplexity": "Perplexity",
}


@cache
def get_settings() -> Settings:
    return Settings()


class ApiKeys(BaseSettings):
    """Per-provider API keys, read from ``CADENZA_API_KEY_<PROVIDER>``."""

    openai: str | None = None
    google: str | None = None
    grok: str | None = None
    perplexity: str | None = None

    model_config = SettingsConfigDict(env_prefix="cadenza_api_key_", case_sensitive=False, frozen=True)

    def get(self, provider: str) -> str | None:
        key = getattr(self, provider, None)
        return key or None

    def require(self, provider: str) -> str:
        key = self.get(provider)
        if not key:
            label = PROVIDER_LABELS.get(provider, provider)
            raise MissingCredentialError(f"Please add your {label} API key in Settings.")
        return key


class Settings(BaseSettings):
    api_keys: ApiKeys = Field(default_factory=ApiKeys)

    ollama_base_url: str = "http://localhost:11434"
    lm_studio_base_url: str = "http://localhost:1234/v1"
    remote_stream_url: str | None = None

    sidecar_dir: str | None = None
    mcp_request_timeout: float = 60.0

    scheduler_idle_interval: float = 0.05
    max_tool_rounds: int = 10
    yolo_mode: bool = False

    log_level: str = "INFO"
    log_file: str | None = None

    model_config = SettingsConfigDict(env_prefix="cadenza_", case_sensitive=False, frozen=True)


def setup_logging(settings: Settings | None = None) -> None:
    """Install the application log format on the root logger."""
    settings = settings or get_settings()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
