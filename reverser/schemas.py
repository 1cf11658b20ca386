"""Pydantic schemas for the registry administration API."""
from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field, field_validator

from .services.registry import Target


class RegisterProxyRequest(BaseModel):
    """Payload mirroring the register form: an identifier and its target url."""

    path: str = Field(..., description="Identifier addressed as /proxy/<path>.")
    target: str = Field(..., description="Absolute upstream url, e.g. http://localhost:9000.")

    @field_validator("path")
    @classmethod
    def _path_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Path is required")
        return value

    @field_validator("target")
    @classmethod
    def _target_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("The target url is required")
        return value.strip()


class ProxyEntry(BaseModel):
    path: str
    target: str
    scheme: str
    host: str
    port: int | None = None

    @classmethod
    def from_target(cls, target: Target) -> "ProxyEntry":
        return cls(
            path=target.identifier,
            target=target.url,
            scheme=target.upstream.scheme,
            host=target.upstream.host,
            port=target.upstream.port,
        )


class ProxyList(BaseModel):
    proxies: List[ProxyEntry] = Field(default_factory=list)
    count: int = 0
