from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tasklane.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32
_MIN_PASSWORD_HASH_ITERATIONS = 100_000


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the process environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tasklane", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (ephemeral secrets, runtime resets).",
    )
    app_version: str = env_field("1.0.0", "APP_VERSION")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tasklane", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    password_hash_iterations: int = env_field(
        _MIN_PASSWORD_HASH_ITERATIONS, "PASSWORD_HASH_ITERATIONS"
    )

    rate_limit_max_requests: int = env_field(60, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Admit requests when the counter store is unreachable.",
    )
    client_ip_header: str | None = env_field(
        None,
        "CLIENT_IP_HEADER",
        description="Header set by the trusted edge with the connecting address "
        "(e.g. CF-Connecting-IP). Unset means the transport peer address.",
    )
    cache_ttl_seconds: int = env_field(60, "CACHE_TTL_SECONDS")

    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_base_url: str | None = env_field(None, "LLM_BASE_URL")
    llm_model: str = env_field("gpt-4o-mini", "LLM_MODEL")
    llm_max_tokens: int = env_field(256, "LLM_MAX_TOKENS")
    llm_timeout_seconds: float = env_field(30.0, "LLM_TIMEOUT_SECONDS")
    ai_summary_max_chars: int = env_field(200, "AI_SUMMARY_MAX_CHARS")
    background_drain_timeout_seconds: float = env_field(
        10.0, "BACKGROUND_DRAIN_TIMEOUT_SECONDS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("client_ip_header", "llm_api_key", "llm_base_url", "jwt_secret")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("password_hash_iterations")
    @classmethod
    def _validate_iterations(cls, value: int) -> int:
        if value < _MIN_PASSWORD_HASH_ITERATIONS:
            raise ValueError(
                f"PASSWORD_HASH_ITERATIONS must be at least {_MIN_PASSWORD_HASH_ITERATIONS}"
            )
        return value

    @field_validator(
        "rate_limit_max_requests",
        "rate_limit_window_seconds",
        "cache_ttl_seconds",
        "access_token_ttl_minutes",
        "ai_summary_max_chars",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        # Tokens issued with an ephemeral secret do not survive a restart
        logger.warning("jwt_secret_ephemeral", reason="JWT_SECRET not set in TEST_MODE")
        self.jwt_secret = secrets.token_urlsafe(64)
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
