from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from accountia_auth.logging import get_logger

logger = get_logger(__name__)

# Minimum HS256 key length accepted at startup
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core.

    Built once at startup and passed explicitly into the token service, the
    OAuth flow and the email sender. Construction fails fast when a required
    value is missing or malformed.
    """

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    temp_token_ttl_minutes: int = env_field(5, "TEMP_TOKEN_TTL_MINUTES", ge=1)
    app_name: str = env_field(
        "Accountia",
        "APP_NAME",
        description="Issuer shown in authenticator apps and email subjects",
    )
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    api_base_url: str = env_field("http://localhost:4789", "API_BASE_URL")
    # Google OAuth settings
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_callback_url: str | None = env_field(None, "GOOGLE_CALLBACK_URL")
    google_oauth_allow_insecure_tls: bool = env_field(
        False,
        "GOOGLE_OAUTH_ALLOW_INSECURE_TLS",
        description="Skip TLS verification for Google calls (local proxies only)",
    )
    oauth_http_timeout_seconds: float = env_field(
        10.0, "OAUTH_HTTP_TIMEOUT_SECONDS", gt=0
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Accountia", "EMAIL_FROM_NAME")
    # Storage
    shared_fs_root: str = env_field("/srv/accountia", "SHARED_FS_ROOT")
    use_persistent_state: bool = env_field(
        False,
        "USE_PERSISTENT_STATE",
        description="Write the in-memory user store to SHARED_FS_ROOT/state",
    )
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")
    test_mode: bool = env_field(False, "TEST_MODE")
    log_level: str = env_field("INFO", "LOG_LEVEL")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: Any) -> Any:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("frontend_url", "api_base_url")
    @classmethod
    def _require_absolute_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("must be an absolute http(s) URL")
        return value.rstrip("/")

    @property
    def google_oauth_configured(self) -> bool:
        return bool(
            self.google_client_id
            and self.google_client_secret
            and self.google_callback_url
        )

    @property
    def frontend_origin(self) -> str:
        parsed = urlparse(self.frontend_url)
        return f"{parsed.scheme}://{parsed.netloc}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if _settings_cache.google_oauth_allow_insecure_tls:
            logger.warning("google_oauth_insecure_tls_enabled")
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
