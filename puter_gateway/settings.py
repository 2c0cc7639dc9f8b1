from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    upstream_url: str = "https://api.puter.com/drivers/call"
    upstream_origin: str = "https://puter.com"
    upstream_timeout_seconds: float = 120.0
    upstream_stream_timeout_seconds: float = 240.0
    upstream_connect_timeout_seconds: float = 10.0
    image_fetch_timeout_seconds: float = 30.0
    puter_api_key: str | None = None
    free_daily_limit: int = 15
    short_block_seconds: float = 300.0
    randomize_credential_start: bool = False
    store_backend: Literal["yaml", "memory"] = "yaml"
    store_path: str = "data/gateway.yaml"
    usage_log_enabled: bool = True
    usage_log_path: str = "logs/usage.jsonl"
    redis_url: str | None = None
    redis_key_prefix: str = "puter-gateway"
    cors_allow_origin: str = "*"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def fallback_credentials(self) -> list[str]:
        if self.puter_api_key and self.puter_api_key.strip():
            return [self.puter_api_key.strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()
