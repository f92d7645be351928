from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from formvault.logging import get_logger

logger = get_logger(__name__)

DEFAULT_REALM_STRING = "formvault"
DEFAULT_BASIC_AUTH_HASH_ENCODING = "SHA-1"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the preference and registered-user services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/formvault", "DATABASE_URL"
    )
    datastore_schema: str = env_field(
        "public",
        "DATASTORE_SCHEMA",
        description="Schema that relations are asserted into",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    data_root: str = env_field(
        "/srv/formvault",
        "DATA_ROOT",
        description="Directory for the in-memory datastore state file",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases",
    )
    super_user_email: str | None = env_field(
        None,
        "SUPER_USER_EMAIL",
        description="OAuth2 email of the site super-user, e.g. mailto:admin@example.org",
    )
    super_user_username: str | None = env_field(
        None,
        "SUPER_USER_USERNAME",
        description="Local username of the site super-user",
    )
    realm_string: str = env_field(
        DEFAULT_REALM_STRING,
        "REALM_STRING",
        description="Authentication realm; changing it forces a super-user password reset",
    )
    basic_auth_hash_encoding: str = env_field(
        DEFAULT_BASIC_AUTH_HASH_ENCODING,
        "BASIC_AUTH_HASH_ENCODING",
        description="Message digest used for basic-auth password hashes",
    )
    bootstrap_password: str = env_field(
        "aggregate",
        "BOOTSTRAP_PASSWORD",
        description="Password assigned to the local super-user and data collector on reset",
    )
    data_collector_username: str | None = env_field(
        "dc",
        "DATA_COLLECTOR_USERNAME",
        description="Service account created alongside the super-user; empty disables it",
    )
    data_collector_full_name: str = env_field(
        "Data Collector", "DATA_COLLECTOR_FULL_NAME"
    )
    bootstrap_on_startup: bool = env_field(
        True,
        "BOOTSTRAP_ON_STARTUP",
        description="Run the super-user bootstrap when the app starts",
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

    @field_validator(
        "super_user_email", "super_user_username", "data_collector_username"
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("realm_string")
    @classmethod
    def _require_realm(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("realm_string must not be empty")
        return value.strip()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            realm=_settings_cache.realm_string,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
