from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional

# Upper bound on concurrent refresh sessions per user; oldest entries evicted first
MAX_REFRESH_TOKENS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshTokenEntry:
    token: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class User:
    """Account record owned by the user store.

    ``email`` and ``username`` are globally unique. ``refresh_tokens`` is an
    ordered ring, newest last, never longer than ``MAX_REFRESH_TOKENS``.
    """

    id: str
    username: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    birthdate: date
    accept_terms: bool = False
    phone_number: Optional[str] = None
    profile_picture: Optional[str] = None
    is_admin: bool = False
    email_confirmed: bool = False
    email_token: Optional[str] = None
    email_confirmation_attempts: int = 0
    last_email_attempt_time: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_temp_secret: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(cls, **kwargs) -> "User":
        kwargs.setdefault("id", uuid.uuid4().hex)
        return cls(**kwargs)

    @property
    def role(self) -> str:
        return "admin" if self.is_admin else "user"

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.lock_until is not None and self.lock_until > (now or utcnow())

    def has_refresh_token(self, token: str, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        return any(
            entry.token == token and not entry.is_expired(current)
            for entry in self.refresh_tokens
        )


__all__ = ["MAX_REFRESH_TOKENS", "RefreshTokenEntry", "User", "utcnow"]
