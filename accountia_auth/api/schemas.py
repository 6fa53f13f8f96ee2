from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Base64 data URI for a ~7MB image
MAX_PROFILE_PICTURE_LENGTH = 9_333_334

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- requests ------------------------------------------------------------------


class RegisterRequest(CamelModel):
    username: str = Field(..., min_length=5, max_length=20)
    email: str
    password: str = Field(..., min_length=6, max_length=128)
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    birthdate: date
    phone_number: Optional[str] = Field(default=None, max_length=32)
    accept_terms: bool
    profile_picture: Optional[str] = Field(
        default=None, max_length=MAX_PROFILE_PICTURE_LENGTH
    )

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorLoginRequest(CamelModel):
    temp_token: str = Field(..., min_length=1, max_length=2048)
    code: str = Field(..., min_length=1, max_length=10)


class TwoFactorVerifyRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=10)


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=6, max_length=128)


class ResendConfirmationRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateUserRequest(CamelModel):
    username: Optional[str] = Field(default=None, min_length=5, max_length=20)
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=6, max_length=128)
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    birthdate: Optional[date] = None
    phone_number: Optional[str] = Field(default=None, max_length=32)
    profile_picture: Optional[str] = Field(
        default=None, max_length=MAX_PROFILE_PICTURE_LENGTH
    )

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


# -- responses -----------------------------------------------------------------


class AuthUserResponse(CamelModel):
    id: str
    username: str
    email: str
    role: Literal["admin", "user"]
    is_admin: bool
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    profile_picture: Optional[str] = None
    birthdate: Optional[date] = None


class AuthResponse(CamelModel):
    access_token: str
    refresh_token: str
    access_token_expires_at: str
    refresh_token_expires_at: str
    user: AuthUserResponse


class TwoFactorChallengeResponse(CamelModel):
    temp_token: str
    two_factor_required: bool = True


class RegistrationResponse(CamelModel):
    message: str
    email: str


class MessageResponse(CamelModel):
    message: str


class TwoFactorSetupResponse(CamelModel):
    qr_code: str
    secret: str


class TwoFactorVerifyResponse(CamelModel):
    enabled: bool


class UserProfileResponse(CamelModel):
    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    birthdate: date
    date_joined: datetime
    phone_number: Optional[str] = None
    profile_picture: Optional[str] = None
    email_confirmed: bool
    two_factor_enabled: bool
    is_admin: bool
