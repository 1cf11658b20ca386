"""Application settings for the reverse-proxy registry."""
from __future__ import annotations

from functools import lru_cache

import httpx
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from ``REVERSER_*`` environment variables."""

    proxy_prefix: str = Field(
        default="/proxy",
        description="Path prefix whose traffic is resolved through the registry.",
    )
    upstream_timeout_seconds: float = Field(default=30.0, gt=0)
    upstream_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    forwarded_headers: bool = Field(
        default=True,
        description="Append X-Forwarded-For/-Host/-Proto to forwarded requests.",
    )
    request_log_limit: int = Field(default=1000, ge=1)

    class Config:
        env_prefix = "REVERSER_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("proxy_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = "/" + value.strip().strip("/")
        if value == "/":
            raise ValueError("proxy_prefix must contain at least one segment")
        return value

    def upstream_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.upstream_timeout_seconds, connect=self.upstream_connect_timeout_seconds)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance."""

    return Settings()
