import pytest
from pydantic import ValidationError

from accountia_auth.config import Settings, get_settings, reset_settings_cache

SECRET = "x" * 32


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_missing_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings()


def test_defaults():
    settings = Settings(jwt_secret=SECRET)

    assert settings.access_token_ttl_minutes == 24 * 60
    assert settings.refresh_token_ttl_days == 7
    assert settings.temp_token_ttl_minutes == 5
    assert settings.google_oauth_configured is False


def test_urls_must_be_absolute_and_lose_trailing_slash():
    settings = Settings(jwt_secret=SECRET, frontend_url="https://app.example.com/")
    assert settings.frontend_url == "https://app.example.com"
    assert settings.frontend_origin == "https://app.example.com"

    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, api_base_url="localhost:4789")


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("MFA_SECRET_KEY", "mfa-key")
    monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "30")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "cid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "csecret")
    monkeypatch.setenv("GOOGLE_CALLBACK_URL", "https://api.example.com/cb")
    reset_settings_cache()

    settings = get_settings()

    assert settings.mfa_encryption_key == "mfa-key"
    assert settings.refresh_token_ttl_days == 30
    assert settings.google_oauth_configured is True
    assert get_settings() is settings
