from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    """Closed set of failure categories raised by the authentication core.

    Kinds are transport-agnostic; the API boundary decides which status code
    each one maps to.
    """

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    INFRA = "infra"


class AuthError(Exception):
    """Base class for service-layer exceptions.

    ``detail`` carries structured, caller-safe context such as the conflict
    ``type`` or ``retry_after_seconds``. It never holds provider bodies or
    stack traces.
    """

    kind: AuthErrorKind = AuthErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        kind: Optional[AuthErrorKind] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.detail = detail or {}


class ValidationError(AuthError):
    """Malformed input, rejected before the store or limiter is touched."""
    kind = AuthErrorKind.VALIDATION


class AuthenticationError(AuthError):
    """Bad credentials, code or token."""
    kind = AuthErrorKind.AUTHENTICATION


class ForbiddenError(AuthError):
    """Authenticated but not allowed (locked account, unconfirmed email, non-admin)."""
    kind = AuthErrorKind.AUTHORIZATION


class ConflictError(AuthError):
    """Duplicate username/email or state that is already applied."""
    kind = AuthErrorKind.CONFLICT


class RateLimitedError(AuthError):
    """Too many attempts; detail carries retry information."""
    kind = AuthErrorKind.RATE_LIMITED


class NotFoundError(AuthError):
    kind = AuthErrorKind.NOT_FOUND


class InfraError(AuthError):
    """Store, mail or provider failure surfaced as a generic failure."""
    kind = AuthErrorKind.INFRA


__all__ = [
    "AuthErrorKind",
    "AuthError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "NotFoundError",
    "InfraError",
]
