from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from repairdesk.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; only production disables the local session."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


class CredentialBackend(str, Enum):
    """Where the credential store keeps the token and tenant pointer."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Client runtime settings for session and tenant resolution."""

    environment: Environment = env_field(Environment.PRODUCTION, "APP_ENV")
    allow_local_session: bool = env_field(
        True,
        "ALLOW_LOCAL_SESSION",
        description="Permit the local-session fallback outside production",
    )
    api_base_url: str = env_field("http://localhost:5000", "API_BASE_URL")
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    tenant_header: str = env_field("X-Organization-ID", "TENANT_HEADER")
    client_name: str = env_field("RepairDeskClient", "CLIENT_NAME")
    # Provider tokens expire after an hour; renew well before that.
    token_expiry_minutes: int = env_field(60, "TOKEN_EXPIRY_MINUTES")
    token_renewal_minutes: int = env_field(50, "TOKEN_RENEWAL_MINUTES")
    credential_backend: CredentialBackend = env_field(
        CredentialBackend.FILE, "CREDENTIAL_BACKEND"
    )
    state_root: str = env_field("~/.repairdesk", "REPAIRDESK_STATE_ROOT")
    credential_secret: str | None = env_field(
        None,
        "CREDENTIAL_SECRET",
        description="Key material for encrypting the persisted token",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    credential_namespace: str = env_field("default", "CREDENTIAL_NAMESPACE")
    fallback_currency_code: str = env_field("USD", "FALLBACK_CURRENCY_CODE")
    fallback_currency_symbol: str = env_field("$", "FALLBACK_CURRENCY_SYMBOL")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("credential_backend")
    @classmethod
    def _validate_backend(cls, value: CredentialBackend) -> CredentialBackend:
        return CredentialBackend(value)

    @field_validator("api_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_renewal_window(self) -> "Settings":
        if self.token_renewal_minutes <= 0:
            raise ValueError("token_renewal_minutes must be positive")
        if self.token_renewal_minutes >= self.token_expiry_minutes:
            raise ValueError(
                "token_renewal_minutes must be below token_expiry_minutes"
            )
        if self.credential_backend == CredentialBackend.REDIS and not self.redis_url:
            raise ValueError("REDIS_URL is required for the redis credential backend")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def local_session_permitted(self) -> bool:
        return self.allow_local_session and not self.is_production

    @property
    def renewal_interval_seconds(self) -> float:
        return float(self.token_renewal_minutes * 60)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            environment=_settings_cache.environment.value,
            credential_backend=_settings_cache.credential_backend.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
