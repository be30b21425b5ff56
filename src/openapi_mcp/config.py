"""Configuration for the OpenAPI MCP runtime."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional, Set

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_METHODS = "GET,POST,PUT,PATCH,DELETE"


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, env_file=".env", extra="allow"
    )

    service_name: str = Field(default="openapi-mcp")

    openapi_spec_file: Optional[str] = Field(default=None)
    openapi_spec_url: Optional[str] = Field(default=None)
    openapi_base_url: Optional[str] = Field(default=None)

    # Runtime options, re-read at the start of every call.
    openapi_mcp_rate_limit: Optional[float] = Field(default=None)
    openapi_mcp_rate_burst: Optional[float] = Field(default=None)
    openapi_mcp_rate_window_ms: float = Field(default=60_000)
    openapi_mcp_allowed_methods: str = Field(default=DEFAULT_ALLOWED_METHODS)
    openapi_mcp_allowed_paths: Optional[str] = Field(default=None)
    openapi_mcp_max_concurrency: Optional[int] = Field(default=None)
    openapi_mcp_max_concurrency_per_path: Optional[int] = Field(default=None)
    openapi_mcp_http_timeout_seconds: float = Field(default=30)

    # Credential fallbacks used when a call does not carry its own.
    openapi_api_key: Optional[str] = Field(default=None)
    openapi_bearer_token: Optional[str] = Field(default=None)
    openapi_basic_user: Optional[str] = Field(default=None)
    openapi_basic_pass: Optional[str] = Field(default=None)
    openapi_oauth_client_id: Optional[str] = Field(default=None)
    openapi_oauth_client_secret: Optional[str] = Field(default=None)

    # Compile filters, applied once when tools are built.
    openapi_mcp_include_tags: Optional[str] = Field(default=None)
    openapi_mcp_exclude_tags: Optional[str] = Field(default=None)
    openapi_mcp_include_ops: Optional[str] = Field(default=None)
    openapi_mcp_exclude_ops: Optional[str] = Field(default=None)
    openapi_mcp_include_paths: Optional[str] = Field(default=None)
    openapi_mcp_exclude_paths: Optional[str] = Field(default=None)

    adapter_transport: str = Field(default="stdio")
    adapter_host: str = Field(default="0.0.0.0")
    adapter_port: int = Field(default=8000)
    adapter_log_level: str = Field(default="INFO")

    openapi_mcp_log_file: Optional[str] = Field(default=None)
    openapi_mcp_log_max_size: int = Field(default=1_048_576)
    openapi_mcp_log_max_files: int = Field(default=5)
    openapi_mcp_log_format: str = Field(default="json")

    def allowed_methods(self) -> Set[str]:
        methods = _split(self.openapi_mcp_allowed_methods) or _split(DEFAULT_ALLOWED_METHODS)
        return {method.upper() for method in methods}

    def allowed_path_patterns(self) -> tuple[str, ...]:
        return tuple(_split(self.openapi_mcp_allowed_paths))

    def rate_burst(self) -> Optional[float]:
        if self.openapi_mcp_rate_burst:
            return self.openapi_mcp_rate_burst
        return self.openapi_mcp_rate_limit

    def api_key_for(self, scheme_name: str) -> Optional[str]:
        # Scoped keys are not declared fields: process env first, then .env extras.
        name = f"OPENAPI_APIKEY_{scheme_name.upper()}"
        extras = self.model_extra or {}
        scoped = os.environ.get(name) or extras.get(name.lower()) or extras.get(name)
        return scoped or self.openapi_api_key

    def compile_filters(self) -> dict[str, List[str]]:
        return {
            "include_tags": _split(self.openapi_mcp_include_tags),
            "exclude_tags": _split(self.openapi_mcp_exclude_tags),
            "include_ops": _split(self.openapi_mcp_include_ops),
            "exclude_ops": _split(self.openapi_mcp_exclude_ops),
            "include_paths": _split(self.openapi_mcp_include_paths),
            "exclude_paths": _split(self.openapi_mcp_exclude_paths),
        }


def load_settings() -> Settings:
    """Build a fresh settings snapshot; used once per tool call."""
    return Settings()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
