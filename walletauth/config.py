from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Asymmetric JWS algorithms only; public verification must be delegable
SUPPORTED_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"}
)

SOPHON_MAINNET_CHAIN_ID = 50104
SOPHON_TESTNET_CHAIN_ID = 531050104


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the auth service, resolved from env and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/walletauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/walletauth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables development key generation and runtime resets.",
    )

    jwt_algorithm: str = env_field("RS256", "JWT_ALGORITHM")
    jwt_issuer: str = env_field("walletauth", "JWT_ISSUER")
    nonce_issuer: str = env_field("walletauth-nonce", "NONCE_ISSUER")
    refresh_issuer: str = env_field("walletauth-refresh", "REFRESH_ISSUER")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0)

    access_private_key: str | None = env_field(None, "ACCESS_PRIVATE_KEY")
    access_public_key: str | None = env_field(None, "ACCESS_PUBLIC_KEY")
    access_private_key_path: str | None = env_field(None, "ACCESS_PRIVATE_KEY_PATH")
    access_key_id: str = env_field("access-key-1", "ACCESS_KEY_ID")
    refresh_private_key: str | None = env_field(None, "REFRESH_PRIVATE_KEY")
    refresh_public_key: str | None = env_field(None, "REFRESH_PUBLIC_KEY")
    refresh_private_key_path: str | None = env_field(None, "REFRESH_PRIVATE_KEY_PATH")
    refresh_key_id: str = env_field("refresh-key-1", "REFRESH_KEY_ID")
    key_cache_ttl_seconds: int = env_field(300, "KEY_CACHE_TTL_SECONDS", ge=0)

    access_token_ttl_seconds: int = env_field(
        3 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        90 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    nonce_ttl_seconds: int = env_field(600, "NONCE_TTL_SECONDS", gt=0)

    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/auth/refresh", "REFRESH_COOKIE_PATH")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    allowed_audiences: list[str] = env_field(
        [],
        "ALLOWED_AUDIENCES",
        description="Registered partner audiences; empty accepts any audience.",
    )
    supported_chain_ids: list[int] = env_field(
        [SOPHON_MAINNET_CHAIN_ID, SOPHON_TESTNET_CHAIN_ID], "SUPPORTED_CHAIN_IDS"
    )
    signature_verifier_url: str | None = env_field(None, "SIGNATURE_VERIFIER_URL")
    signature_verifier_timeout_seconds: float = env_field(
        10.0, "SIGNATURE_VERIFIER_TIMEOUT_SECONDS", gt=0
    )
    jwks_max_age_seconds: int = env_field(300, "JWKS_MAX_AGE_SECONDS", ge=0)

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

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        algorithm = value.strip().upper()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"JWT_ALGORITHM must be one of {', '.join(sorted(SUPPORTED_ALGORITHMS))}"
            )
        return algorithm

    @field_validator("allowed_audiences", "supported_chain_ids", mode="before")
    @classmethod
    def _split_lists(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("refresh_cookie_path")
    @classmethod
    def _validate_cookie_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("REFRESH_COOKIE_PATH must be absolute")
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
