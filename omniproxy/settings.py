from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_home() -> Path:
    return Path.home() / ".omniproxy"


class Settings(BaseSettings):
    omniproxy_home: Path = Field(default_factory=_default_home)
    accounts_path: Path | None = None
    models_path: Path | None = None
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"
    codex_base_url: str = "https://api.openai.com/v1"
    claude_base_url: str = "https://api.anthropic.com/v1"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    gemini_oauth_client_id: str | None = None
    gemini_oauth_client_secret: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def resolved_accounts_path(self) -> Path:
        return self.accounts_path or self.omniproxy_home / "accounts.yaml"

    @property
    def resolved_models_path(self) -> Path:
        return self.models_path or self.omniproxy_home / "models.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
