from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkeep.logging import get_logger

logger = get_logger(__name__)

# Used only outside production when JWT_SECRET is unset.
DEV_JWT_SECRET = "authkeep-development-secret-change-me-before-deploying"

PASSWORD_HASH_COST_DEFAULT = 3
PASSWORD_HASH_COST_MIN = 2
PASSWORD_HASH_COST_MAX = 10


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings loaded from the process environment and ``.env``."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    port: int = env_field(8081, "PORT")
    database_url: str = env_field("", "DATABASE_URL")
    redis_url: str = env_field("", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for the test suite (memory fallbacks, no SMTP).",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authkeep", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    password_reset_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TTL_MINUTES", ge=1
    )
    email_verification_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES", ge=1
    )
    password_hash_cost: int = env_field(
        PASSWORD_HASH_COST_DEFAULT,
        "PASSWORD_HASH_COST",
        description="argon2 time_cost; values outside 2-10 fall back to the default",
    )
    rate_limit_per_minute: int = env_field(20, "RATE_LIMIT_PER_MINUTE", ge=1)
    cors_origins: str = env_field("http://localhost:3000", "CORS_ORIGINS")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    # Email delivery; when SMTP_HOST is unset messages are only logged
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authkeep", "EMAIL_FROM_NAME")

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
            return value.strip().lower() or Environment.DEVELOPMENT
        return value

    @field_validator("password_hash_cost")
    @classmethod
    def _bound_hash_cost(cls, value: int) -> int:
        if PASSWORD_HASH_COST_MIN <= value <= PASSWORD_HASH_COST_MAX:
            return value
        logger.warning(
            "password_hash_cost_out_of_range",
            requested=value,
            using=PASSWORD_HASH_COST_DEFAULT,
        )
        return PASSWORD_HASH_COST_DEFAULT

    @model_validator(mode="after")
    def _check_required_secrets(self) -> "Settings":
        if self.environment == Environment.PRODUCTION:
            missing = [
                env
                for env, value in (
                    ("JWT_SECRET", self.jwt_secret),
                    ("DATABASE_URL", self.database_url),
                    ("REDIS_URL", self.redis_url),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"missing required settings in production: {', '.join(missing)}"
                )
        elif not self.jwt_secret:
            logger.warning("jwt_secret_missing_using_dev_default")
            self.jwt_secret = DEV_JWT_SECRET
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


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
