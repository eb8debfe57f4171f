from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mcp_gateway.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments; production-like ones hide error internals."""

    DEVELOPMENT = "development"
    TEST = "test"
    LOCALPROD = "localprod"
    PRODUCTION = "production"


PROD_LIKE_ENVS = {AppEnv.PRODUCTION, AppEnv.LOCALPROD}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gateway process."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/mcp_gateway", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for the test suite.",
    )

    # Athena (Q&A / RAG) tool
    athena_api_url: str | None = env_field(None, "ATHENA_API_URL")
    athena_api_key: str | None = env_field(None, "ATHENA_API_KEY")
    athena_query_timeout_seconds: float = env_field(
        15.0, "ATHENA_QUERY_TIMEOUT_SECONDS"
    )
    athena_ingest_timeout_seconds: float = env_field(
        30.0,
        "ATHENA_INGEST_TIMEOUT_SECONDS",
        description="Ingest uploads a file and needs a longer budget than a query.",
    )

    # Moad (documentation generation) tool
    moad_api_url: str | None = env_field(None, "MOAD_API_URL")
    moad_api_key: str | None = env_field(None, "MOAD_API_KEY")
    moad_timeout_seconds: float = env_field(30.0, "MOAD_TIMEOUT_SECONDS")

    # Conversational context
    context_ttl_seconds: int = env_field(3600, "CONTEXT_TTL_SECONDS")
    context_max_length: int = env_field(500, "CONTEXT_MAX_LENGTH")

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

    @property
    def is_prod_like(self) -> bool:
        return self.app_env in PROD_LIKE_ENVS

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnv(value)

    @field_validator("redis_url", "athena_api_url", "moad_api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.rstrip("/")

    @field_validator("context_max_length")
    @classmethod
    def _validate_context_max_length(cls, value: int) -> int:
        # Below this the head/tail slices plus the marker exceed the limit
        # and truncation stops being idempotent.
        if value < 120:
            logger.warning(
                "context_max_length_too_small", requested=value, applied=120
            )
            return 120
        return value


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
