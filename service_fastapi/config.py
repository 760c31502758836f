"""Listener configuration using Pydantic Settings.

Values are loaded from keyword arguments, environment variables and .env
files. Every field accepts both its camelCase configuration name
(``httpPort``) and its snake_case name (``http_port``, also the environment
variable). The settings object is frozen once built.
"""

from __future__ import annotations

import ipaddress
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SERVER_TYPES = ("http", "https")

VALID_HOSTS_V4 = ("0.0.0.0", "localhost", "127.0.0.1")
VALID_HOSTS_V6 = ("::", "localhost", "::1")


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ServerSettings(BaseSettings):
    """Settings for the HTTP/HTTPS/health listeners."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # ── General ───────────────────────────────
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    service_name: str = "service-fastapi"

    # ── Listener selection ────────────────────
    server_type: Literal["http", "https"] = Field(
        "http", validation_alias=_alias("type", "server_type")
    )
    host: str = "localhost"
    http_port: int = Field(3000, ge=0, le=65535, validation_alias=_alias("httpPort", "http_port"))
    https_port: int = Field(3000, ge=0, le=65535, validation_alias=_alias("httpsPort", "https_port"))
    https_cert: str | None = Field(None, validation_alias=_alias("httpsCert", "https_cert"))
    https_key: str | None = Field(None, validation_alias=_alias("httpsKey", "https_key"))

    # ── Health endpoint ───────────────────────
    health: bool = False
    health_server_port: int | None = Field(
        None, ge=0, le=65535, validation_alias=_alias("healthServerPort", "health_server_port")
    )

    # ── Socket options ────────────────────────
    exclusive: bool = False
    readable_all: bool = Field(False, validation_alias=_alias("readableAll", "readable_all"))
    writable_all: bool = Field(False, validation_alias=_alias("writableAll", "writable_all"))
    ipv6_only: bool = Field(False, validation_alias=_alias("ipv6Only", "ipv6_only"))

    # ── Protocol ──────────────────────────────
    http2: bool = False
    allow_http1: bool = Field(False, validation_alias=_alias("allowHTTP1", "allow_http1"))

    # ── Trust gate (traefik + cloudflarewarp) ─
    behind_traefik_with_cloudflare_warp: bool = Field(
        False,
        validation_alias=_alias(
            "behindTraefikWithCloudflareWarp", "behind_traefik_with_cloudflare_warp"
        ),
    )

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        if value in VALID_HOSTS_V4 or value in VALID_HOSTS_V6:
            return value
        try:
            ipaddress.ip_address(value)
        except ValueError:
            raise ValueError(
                "Invalid host. It should be a valid host name or IP address"
            ) from None
        return value

    @field_validator("http2")
    @classmethod
    def _check_http2(cls, value: bool) -> bool:
        # uvicorn only speaks HTTP/1.1
        if value:
            raise ValueError("http2 is not supported; listeners serve HTTP/1.1 only")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def json_logs(self) -> bool:
        return self.is_production

    @property
    def health_on_dedicated_listener(self) -> bool:
        """True when ``/health`` is served from its own port."""
        return self.health and bool(self.health_server_port)
