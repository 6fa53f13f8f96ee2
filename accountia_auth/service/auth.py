from __future__ import annotations

import asyncio
import base64
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from multiavatar.multiavatar import multiavatar

from accountia_auth.config import Settings
from accountia_auth.logging import get_logger
from accountia_auth.service.email import EmailService
from accountia_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InfraError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from accountia_auth.service.oauth import GoogleAuthParams, GoogleOAuthFlow
from accountia_auth.service.passwords import hash_password, verify_password
from accountia_auth.service.rate_limit import RateLimiter
from accountia_auth.service.results import (
    AuthContext,
    AuthResult,
    ConfirmationResult,
    LoginOutcome,
    RegisterInput,
    RegistrationResult,
    TwoFactorChallenge,
    UpdateUserInput,
    format_timestamp,
)
from accountia_auth.service.tokens import (
    TOKEN_TYPE_2FA_TEMP,
    TOKEN_TYPE_REFRESH,
    TokenService,
)
from accountia_auth.service.two_factor import TwoFactorEngine, TwoFactorSetup
from accountia_auth.storage.common import UserStore
from accountia_auth.storage.errors import ConstraintViolation
from accountia_auth.storage.models import User, utcnow

logger = get_logger(__name__)

MAX_FAILED_LOGINS = 5
ACCOUNT_LOCK_DURATION = timedelta(minutes=15)
PASSWORD_RESET_TTL = timedelta(hours=1)
MIN_PASSWORD_LENGTH = 6
USERNAME_LENGTH = (5, 20)
NAME_LENGTH = (2, 50)

REGISTRATION_MESSAGE = (
    "Registration successful! Please check your email to confirm your account."
)
INVALID_CREDENTIALS = "Invalid email or password"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def generate_email_token() -> str:
    return secrets.token_hex(16)


def default_avatar(username: str) -> str:
    """Deterministic multiavatar SVG for ``username`` as a data URI."""
    svg = multiavatar(username, None, None)
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode()


def _check_length(value: Optional[str], bounds: tuple[int, int], label: str) -> None:
    low, high = bounds
    if value is None or not (low <= len(value.strip()) <= high):
        raise ValidationError(f"{label} must be between {low} and {high} characters")


def _check_password(password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )


class AuthService:
    """Registration, login, two-factor, session refresh and account lifecycle.

    Every collaborator is injected. The rate limiter gates credential checks
    per ``(email, ip)``; the per-account lock (``failed_login_attempts`` /
    ``lock_until``) sits on top of it and survives across addresses.
    """

    def __init__(
        self,
        settings: Settings,
        store: UserStore,
        *,
        rate_limiter: RateLimiter,
        tokens: TokenService,
        two_factor: TwoFactorEngine,
        oauth: GoogleOAuthFlow,
        email: EmailService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.two_factor = two_factor
        self.oauth = oauth
        self.email = email
        self._clock = clock
        self.logger = logger

    # -- helpers ------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    def _require_user(self, user_id: str, message: str = "User not found") -> User:
        user = self.store.find_by_id(user_id)
        if not user:
            raise NotFoundError(message)
        return user

    def _issue_session(self, user: User) -> AuthResult:
        pair = self.tokens.generate_tokens(user)
        if not self.tokens.push_refresh_token(
            user.id, pair.refresh_token, pair.refresh_token_expires_at
        ):
            raise InfraError("Unable to persist session")
        return AuthResult.build(pair, user)

    def _reset_failed_attempts(self, user: User) -> None:
        if user.failed_login_attempts > 0 or user.lock_until:
            self.store.update_one(
                {"id": user.id},
                {"$set": {"failed_login_attempts": 0}, "$unset": {"lock_until": ""}},
            )

    def _handle_failed_login(self, user: User) -> None:
        attempts = user.failed_login_attempts + 1
        patch: dict = {"$inc": {"failed_login_attempts": 1}}
        if attempts >= MAX_FAILED_LOGINS:
            patch["$set"] = {"lock_until": self._now() + ACCOUNT_LOCK_DURATION}
            self.logger.warning("account_locked", user_id=user.id, attempts=attempts)
        self.store.update_one({"id": user.id}, patch)

    def _gate_login(self, identifier: str, ip: str, message: str) -> None:
        check = self.rate_limiter.check_login_attempts(identifier, ip)
        if check.allowed:
            return
        detail: dict = {}
        if check.blocked_until is not None:
            retry_after = max(0, int((check.blocked_until - self._now()).total_seconds()))
            detail = {
                "blocked_until": format_timestamp(check.blocked_until),
                "retry_after_seconds": retry_after,
            }
        self.logger.warning("login_rate_limited", ip=ip)
        raise RateLimitedError(message, detail=detail)

    def _record_code_outcome(self, identifier: str, ip: str, valid: bool) -> None:
        if valid:
            self.rate_limiter.clear_login_attempts(identifier, ip)
        else:
            self.rate_limiter.record_failed_login(identifier, ip)

    async def _send_confirmation(self, email: str, token: str) -> bool:
        return await asyncio.to_thread(self.email.send_confirmation_email, email, token)

    # -- registration -------------------------------------------------------

    async def register(self, data: RegisterInput) -> RegistrationResult:
        if not data.accept_terms:
            raise ValidationError("You must accept the terms and conditions")
        email = normalize_email(data.email)
        if "@" not in email:
            raise ValidationError("Please provide a valid email address")
        username = (data.username or "").strip()
        _check_length(username, USERNAME_LENGTH, "Username")
        _check_password(data.password)
        _check_length(data.first_name, NAME_LENGTH, "First name")
        _check_length(data.last_name, NAME_LENGTH, "Last name")

        existing = self.store.find_one({"$or": [{"email": email}, {"username": username}]})
        if existing:
            if existing.email_confirmed:
                raise ConflictError(
                    "Username or email is already registered",
                    detail={"type": "ACCOUNT_EXISTS"},
                )
            raise ConflictError(
                "Account exists but email is not confirmed. Please check your email "
                "or request a new confirmation.",
                detail={"type": "EMAIL_NOT_CONFIRMED", "email": email},
            )

        email_token = generate_email_token()
        user = User.new(
            username=username,
            email=email,
            password_hash=hash_password(data.password),
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            birthdate=data.birthdate,
            phone_number=data.phone_number,
            accept_terms=True,
            profile_picture=data.profile_picture or default_avatar(username),
            email_token=email_token,
            email_confirmed=False,
            is_admin=False,
        )
        try:
            saved = self.store.save(user)
        except ConstraintViolation as exc:
            raise ConflictError(
                "Username or email is already registered",
                detail={"type": "ACCOUNT_EXISTS"},
            ) from exc

        if not await self._send_confirmation(saved.email, email_token):
            self.logger.warning("registration_email_failed", user_id=saved.id)
        self.logger.info("user_registered", user_id=saved.id)
        return RegistrationResult(message=REGISTRATION_MESSAGE, email=saved.email)

    # -- login --------------------------------------------------------------

    async def login(self, email: str, password: str, ip: str) -> LoginOutcome:
        email = normalize_email(email)
        self._gate_login(
            email, ip, "Too many failed login attempts. Please try again later."
        )

        user = self.store.find_one({"email": email})
        if not user:
            self.rate_limiter.record_failed_login(email, ip)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if user.is_locked(self._now()):
            raise ForbiddenError(
                "Account is temporarily locked due to too many failed attempts"
            )
        if not user.email_confirmed:
            raise ForbiddenError(
                "Email not confirmed. Please confirm your email before logging in."
            )
        if not verify_password(user.password_hash, password):
            self._handle_failed_login(user)
            self.rate_limiter.record_failed_login(email, ip)
            self.logger.info("login_failed", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if user.two_factor_enabled:
            self.logger.info("login_two_factor_required", user_id=user.id)
            return TwoFactorChallenge(temp_token=self.tokens.generate_temp_token(user))

        self._reset_failed_attempts(user)
        self.rate_limiter.clear_login_attempts(email, ip)
        result = self._issue_session(user)
        self.logger.info("login_success", user_id=user.id)
        return result

    async def two_factor_login(self, temp_token: str, code: str, ip: str) -> AuthResult:
        payload = self.tokens.decode(temp_token)
        if payload is None:
            raise AuthenticationError("Invalid or expired temp token")
        if payload.get("type") != TOKEN_TYPE_2FA_TEMP:
            raise AuthenticationError("Invalid token type")

        user = self.store.find_by_id(str(payload.get("sub")))
        if not user or not user.two_factor_enabled or not user.two_factor_secret:
            raise AuthenticationError("2FA not enabled")

        self._gate_login(user.email, ip, "Too many 2FA attempts. Please try again later.")
        valid = self.two_factor.verify_login_code(user, code)
        self._record_code_outcome(user.email, ip, valid)
        if not valid:
            self.logger.info("two_factor_login_failed", user_id=user.id)
            raise AuthenticationError("Invalid 2FA code")

        self._reset_failed_attempts(user)
        result = self._issue_session(user)
        self.logger.info("login_success", user_id=user.id, two_factor=True)
        return result

    # -- two-factor management ---------------------------------------------

    async def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        return self.two_factor.setup_two_factor(user_id)

    async def verify_two_factor(
        self, user_id: str, code: str, ip: Optional[str] = None
    ) -> bool:
        if ip is None:
            return self.two_factor.verify_two_factor(user_id, code)

        user = self._require_user(user_id)
        self._gate_login(user.email, ip, "Too many 2FA attempts. Please try again later.")
        valid = self.two_factor.verify_two_factor(user_id, code)
        self._record_code_outcome(user.email, ip, valid)
        return valid

    async def disable_two_factor(self, user_id: str) -> None:
        self.two_factor.disable_two_factor(user_id)

    # -- sessions -----------------------------------------------------------

    async def logout(self, user_id: str, refresh_token: str) -> None:
        self.tokens.revoke_refresh_token(user_id, refresh_token)
        self.logger.info("logout", user_id=user_id)

    async def refresh_tokens(self, refresh_token: str) -> AuthResult:
        payload = self.tokens.decode(refresh_token)
        if payload is None:
            if self.tokens.decode(refresh_token, verify_exp=False) is not None:
                raise AuthenticationError("Refresh token has expired")
            raise AuthenticationError("Invalid refresh token")
        if payload.get("type") != TOKEN_TYPE_REFRESH:
            raise AuthenticationError("Invalid token type")

        user = self.store.find_by_id(str(payload.get("sub")))
        if not user:
            raise AuthenticationError("Invalid refresh token")
        if not user.has_refresh_token(refresh_token, self._now()):
            self.logger.warning("refresh_token_not_recognized", user_id=user.id)
            raise AuthenticationError("Invalid or expired refresh token")

        pair = self.tokens.generate_tokens(user)
        if not self.tokens.rotate_refresh_token(
            user.id, refresh_token, pair.refresh_token, pair.refresh_token_expires_at
        ):
            raise AuthenticationError("Invalid refresh token")
        return AuthResult.build(pair, user)

    async def authenticate(self, access_token: str) -> AuthContext:
        payload = self.tokens.decode(access_token)
        if payload is None:
            raise AuthenticationError("Invalid or expired token")
        if payload.get("type"):
            raise AuthenticationError("Invalid token type")
        user = self.store.find_by_id(str(payload.get("sub")))
        if not user:
            raise AuthenticationError("Invalid or expired token")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            is_admin=user.is_admin,
            user=user,
            claims=payload,
        )

    def require_admin(self, context: AuthContext) -> None:
        if not context.is_admin:
            raise ForbiddenError("Admin access required")

    # -- password reset -----------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        user = self.store.find_one({"email": normalize_email(email)})
        if not user:
            return

        reset_token = generate_email_token()
        self.store.update_one(
            {"id": user.id},
            {
                "$set": {
                    "password_reset_token": reset_token,
                    "password_reset_expires": self._now() + PASSWORD_RESET_TTL,
                }
            },
        )
        sent = await asyncio.to_thread(
            self.email.send_password_reset_email, user.email, reset_token
        )
        if not sent:
            self.logger.warning("password_reset_email_failed", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        _check_password(new_password)
        if not token:
            raise ValidationError("Invalid or expired token")
        user = self.store.find_one(
            {
                "password_reset_token": token,
                "password_reset_expires": {"$gt": self._now()},
            }
        )
        if not user:
            raise ValidationError("Invalid or expired token")

        self.store.update_one(
            {"id": user.id},
            {
                "$set": {
                    "password_hash": hash_password(new_password),
                    "failed_login_attempts": 0,
                },
                "$unset": {
                    "password_reset_token": "",
                    "password_reset_expires": "",
                    "lock_until": "",
                },
            },
        )
        self.logger.info("password_reset_complete", user_id=user.id)

    # -- email confirmation -------------------------------------------------

    async def confirm_email(self, token: str) -> ConfirmationResult:
        try:
            user = self.store.find_one({"email_token": token}) if token else None
            if not user:
                return ConfirmationResult(False, "Invalid confirmation token")
            if user.email_confirmed:
                return ConfirmationResult(False, "Email is already confirmed")
            self.store.update_one(
                {"id": user.id},
                {
                    "$set": {"email_confirmed": True, "email_confirmation_attempts": 0},
                    "$unset": {"email_token": ""},
                },
            )
            self.logger.info("email_confirmed", user_id=user.id)
            return ConfirmationResult(True, "Email confirmed successfully")
        except Exception as exc:
            self.logger.error("email_confirmation_failed", error=str(exc))
            return ConfirmationResult(False, "Failed to confirm email")

    async def resend_confirmation_email(self, email: str) -> str:
        user = self.store.find_one({"email": normalize_email(email)})
        if not user:
            raise NotFoundError("User not found")
        if user.email_confirmed:
            raise ConflictError("Email is already confirmed")

        check = self.rate_limiter.check_email_attempts(user.id)
        if not check.allowed:
            wait_ms = check.wait_time_ms or 0
            wait_minutes = -(-wait_ms // 60_000)
            raise RateLimitedError(
                f"Please wait {wait_minutes} minutes before requesting another "
                "confirmation email",
                detail={"retry_after_seconds": -(-wait_ms // 1000)},
            )

        email_token = generate_email_token()
        self.store.update_one(
            {"id": user.id},
            {
                "$set": {"email_token": email_token, "last_email_attempt_time": self._now()},
                "$inc": {"email_confirmation_attempts": 1},
            },
        )
        if not await self._send_confirmation(user.email, email_token):
            raise InfraError("Unable to resend confirmation email")
        self.rate_limiter.record_email_attempt(user.id)
        return "Confirmation email sent successfully"

    # -- Google -------------------------------------------------------------

    def get_google_auth_url(self, params: GoogleAuthParams) -> str:
        return self.oauth.get_google_auth_url(params)

    async def handle_google_callback(
        self, code: Optional[str], state: Optional[str]
    ) -> str:
        return await self.oauth.handle_google_callback(code, state)

    # -- profile ------------------------------------------------------------

    async def fetch_user(self, user_id: str) -> User:
        return self._require_user(user_id, "Your user profile could not be retrieved")

    async def update_user(self, user_id: str, data: UpdateUserInput) -> User:
        user = self._require_user(user_id, "Your user profile could not be found")
        updates: dict = {}
        new_email_token: Optional[str] = None

        if data.username is not None:
            username = data.username.strip()
            if username != user.username:
                _check_length(username, USERNAME_LENGTH, "Username")
                if self.store.find_one({"username": username}):
                    raise ConflictError(
                        "Username is already taken", detail={"type": "USERNAME_TAKEN"}
                    )
                updates["username"] = username

        if data.email is not None:
            email = normalize_email(data.email)
            if email != user.email:
                if "@" not in email:
                    raise ValidationError("Please provide a valid email address")
                if self.store.find_one({"email": email}):
                    raise ConflictError(
                        "Email is already registered", detail={"type": "EMAIL_TAKEN"}
                    )
                new_email_token = generate_email_token()
                updates.update(
                    email=email, email_confirmed=False, email_token=new_email_token
                )

        if data.password:
            _check_password(data.password)
            updates["password_hash"] = hash_password(data.password)
        if data.first_name is not None:
            _check_length(data.first_name, NAME_LENGTH, "First name")
            updates["first_name"] = data.first_name.strip()
        if data.last_name is not None:
            _check_length(data.last_name, NAME_LENGTH, "Last name")
            updates["last_name"] = data.last_name.strip()
        if data.birthdate is not None:
            updates["birthdate"] = data.birthdate
        if data.phone_number is not None:
            updates["phone_number"] = data.phone_number
        if data.profile_picture is not None:
            updates["profile_picture"] = data.profile_picture

        if not updates:
            raise ValidationError("No update fields provided")

        try:
            updated = self.store.find_by_id_and_update(user_id, {"$set": updates})
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not updated:
            raise NotFoundError("Your user profile could not be found")

        if new_email_token and not await self._send_confirmation(
            updated.email, new_email_token
        ):
            self.logger.warning("email_change_confirmation_failed", user_id=user_id)
        self.logger.info("user_updated", user_id=user_id, fields=sorted(updates))
        return updated

    async def delete_user(self, user_id: str) -> None:
        if not self.store.find_by_id_and_delete(user_id):
            raise NotFoundError("Your user profile could not be found")
        self.logger.info("user_deleted", user_id=user_id)

    async def delete_user_by_admin(self, admin_id: str, user_id: str) -> None:
        if admin_id == user_id:
            raise ValidationError("Administrators cannot delete themselves")
        self._require_user(user_id, "The specified user could not be found")
        self.store.delete_one({"id": user_id})
        self.logger.info("user_deleted_by_admin", user_id=user_id, admin_id=admin_id)


__all__ = [
    "ACCOUNT_LOCK_DURATION",
    "AuthService",
    "MAX_FAILED_LOGINS",
    "PASSWORD_RESET_TTL",
    "default_avatar",
    "generate_email_token",
    "normalize_email",
]
