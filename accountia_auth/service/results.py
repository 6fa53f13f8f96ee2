from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Literal, Optional, Union

from accountia_auth.service.tokens import TokenPair
from accountia_auth.storage.models import User


def format_timestamp(value: datetime) -> str:
    """ISO 8601 in UTC with millisecond precision and a ``Z`` suffix."""
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


@dataclass(frozen=True)
class AuthUser:
    id: str
    username: str
    email: str
    role: str
    is_admin: bool
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    profile_picture: Optional[str] = None
    birthdate: Optional[date] = None

    @classmethod
    def from_user(cls, user: User) -> "AuthUser":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_admin=user.is_admin,
            first_name=user.first_name,
            last_name=user.last_name,
            phone_number=user.phone_number,
            profile_picture=user.profile_picture,
            birthdate=user.birthdate,
        )


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    user: AuthUser
    kind: Literal["authenticated"] = "authenticated"

    @classmethod
    def build(cls, tokens: TokenPair, user: User) -> "AuthResult":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            access_token_expires_at=tokens.access_token_expires_at,
            refresh_token_expires_at=tokens.refresh_token_expires_at,
            user=AuthUser.from_user(user),
        )


@dataclass(frozen=True)
class TwoFactorChallenge:
    temp_token: str
    kind: Literal["two_factor_required"] = "two_factor_required"


LoginOutcome = Union[AuthResult, TwoFactorChallenge]


@dataclass(frozen=True)
class RegistrationResult:
    message: str
    email: str


@dataclass(frozen=True)
class ConfirmationResult:
    success: bool
    message: str


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to a request after access-token verification."""

    user_id: str
    role: str
    is_admin: bool
    user: User
    claims: dict = field(default_factory=dict)


@dataclass
class RegisterInput:
    username: str
    email: str
    password: str
    first_name: str
    last_name: str
    birthdate: date
    accept_terms: bool
    phone_number: Optional[str] = None
    profile_picture: Optional[str] = None


@dataclass
class UpdateUserInput:
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    birthdate: Optional[date] = None
    phone_number: Optional[str] = None
    profile_picture: Optional[str] = None


__all__ = [
    "AuthContext",
    "AuthResult",
    "AuthUser",
    "ConfirmationResult",
    "LoginOutcome",
    "RegisterInput",
    "RegistrationResult",
    "TwoFactorChallenge",
    "UpdateUserInput",
    "format_timestamp",
]
