"""Application runtime configuration."""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Settings loaded from constructor kwargs and `GOLDEN_AXE_*` environment variables.

    Invariant:
        `mode="webhook"` always comes with a `domain`; the webhook URL is
        `https://{domain}/{run_hash}`.
        `log` is an upper-case standard `logging` level name.
    """

    model_config = SettingsConfigDict(env_prefix="GOLDEN_AXE_")

    log: str = "INFO"
    token: SecretStr
    mode: Literal["poll", "webhook"] = "poll"
    domain: str | None = None
    debug_chat: int | None = None

    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080
    poll_timeout_seconds: int = 60

    workers: int = 8
    admin_cache_ttl_seconds: float = 60.0
    retry_base_delay_seconds: float = 1.0
    retry_multiplier: float = 2.0
    max_attempts: int = 5
    max_title_length: int = 16
    self_service: bool = False

    @field_validator("log")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @field_validator("domain")
    @classmethod
    def _strip_domain(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().removeprefix("https://").rstrip("/")
        return value or None

    @field_validator("poll_timeout_seconds", "workers", "max_attempts", "max_title_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"must be > 0; got {value}")
        return value

    @model_validator(mode="after")
    def _validate_webhook_domain(self) -> Config:
        if self.mode == "webhook" and self.domain is None:
            raise ValueError("Cannot set bot mode to webhook when domain is not present")
        return self
