from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from olakz_auth.logging import get_logger

logger = get_logger(__name__)

ADMIN_ROLE = "admin"
VALID_ROLES = ("customer", "driver", "admin")


class FederatedLinkPolicy(str, Enum):
    """How a first federated sign-in treats an existing account with the same email.

    - VERIFIED_EMAIL: link automatically when the provider asserts the email
      is verified; otherwise refuse with a conflict.
    - EXPLICIT: never link by email; the account owner must sign in and call
      the explicit link endpoint.
    """

    VERIFIED_EMAIL = "verified_email"
    EXPLICIT = "explicit"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, built once and handed to each component."""

    database_url: str = env_field(
        "postgresql://localhost:5432/olakz_auth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    secrets_dir: str = env_field("/srv/olakz-auth", "SECRETS_DIR")

    # Token engine
    jwt_access_secret: str | None = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("olakz-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("olakz-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    # OTP engine
    otp_secret: str | None = env_field(None, "OTP_SECRET", validate_default=True)
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", gt=0)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", gt=0)
    otp_resend_limit_per_hour: int = env_field(3, "OTP_RESEND_LIMIT_PER_HOUR")

    # Federated identity
    google_client_ids: list[str] = env_field([], "GOOGLE_CLIENT_IDS")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    apple_client_id: str | None = env_field(None, "APPLE_CLIENT_ID")
    apple_team_id: str | None = env_field(None, "APPLE_TEAM_ID")
    apple_key_id: str | None = env_field(None, "APPLE_KEY_ID")
    apple_private_key: str | None = env_field(None, "APPLE_PRIVATE_KEY")
    apple_redirect_uri: str | None = env_field(None, "APPLE_REDIRECT_URI")
    jwks_cache_seconds: int = env_field(3600, "JWKS_CACHE_SECONDS", ge=0)
    jwks_min_refetch_seconds: int = env_field(60, "JWKS_MIN_REFETCH_SECONDS", ge=0)
    federated_link_policy: FederatedLinkPolicy = env_field(
        FederatedLinkPolicy.VERIFIED_EMAIL,
        "FEDERATED_LINK_POLICY",
        description="verified_email or explicit",
    )

    # Roles and internal calls
    default_role: str = env_field("customer", "DEFAULT_ROLE")
    internal_api_key: str | None = env_field(None, "INTERNAL_API_KEY")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Olakz Ride", "EMAIL_FROM_NAME")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    registration_rate_limit_per_hour: int = env_field(
        5, "REGISTRATION_RATE_LIMIT_PER_HOUR"
    )
    login_failure_limit: int = env_field(5, "LOGIN_FAILURE_LIMIT", gt=0)
    login_block_minutes: int = env_field(15, "LOGIN_BLOCK_MINUTES", gt=0)
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("google_client_ids", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("federated_link_policy")
    @classmethod
    def _validate_link_policy(cls, value: FederatedLinkPolicy) -> FederatedLinkPolicy:
        return FederatedLinkPolicy(value)

    @field_validator("default_role")
    @classmethod
    def _validate_default_role(cls, value: str) -> str:
        if value not in VALID_ROLES or value == ADMIN_ROLE:
            raise ValueError(f"default_role must be a non-admin role in {VALID_ROLES}")
        return value

    @field_validator("apple_private_key")
    @classmethod
    def _unescape_private_key(cls, value: str | None) -> str | None:
        # PEM keys passed through env files usually carry literal \n sequences
        if value and "\\n" in value:
            return value.replace("\\n", "\n")
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret", "otp_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        secrets_root = Path(
            info.data.get("secrets_dir") or os.getenv("SECRETS_DIR", "/srv/olakz-auth")
        )
        return _load_or_create_secret(secrets_root, info.field_name)

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _distinct_refresh_secret(cls, value: str, info: ValidationInfo) -> str:
        if value == info.data.get("jwt_access_secret"):
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_ACCESS_SECRET")
        return value


def _load_or_create_secret(secrets_root: Path, name: str) -> str:
    """Persist a generated secret so issued tokens survive restarts."""
    secret_path = secrets_root / f".{name}"
    try:
        secrets_root.mkdir(parents=True, exist_ok=True)
        os.chmod(secrets_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", path=str(secrets_root), error=str(exc))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", path=str(secret_path), error=str(exc))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(secrets_root), prefix=f".{name}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", path=str(secret_path), error=str(exc))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SECRETS_DIR writable"
        ) from exc
    logger.info("secret_generated", name=name, path=str(secret_path))
    return generated


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
