"""TOTP enrollment and verification.

Enrollment is a two-step state machine. ``setup_two_factor`` parks a fresh
secret in ``two_factor_temp_secret``; ``verify_two_factor`` promotes it to
``two_factor_secret`` once the user proves possession of a matching code. A
failed verification leaves the pending secret in place so the user can retry
with the same authenticator entry.

Codes are standard RFC 6238 (SHA1, 6 digits, 30s step) and accepted within one
step either side of the current time.
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import pyotp
import qrcode

from accountia_auth.config import Settings
from accountia_auth.logging import get_logger
from accountia_auth.service.errors import NotFoundError, ValidationError
from accountia_auth.storage.common import UserStore
from accountia_auth.storage.models import User, utcnow

logger = get_logger(__name__)

TOTP_VALID_WINDOW = 1


@dataclass(frozen=True)
class TwoFactorSetup:
    qr_code: str
    secret: str
    otpauth_uri: str


def render_qr_data_uri(uri: str) -> str:
    """Render ``uri`` as a PNG QR code wrapped in a data URI."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{encoded}"


def _normalize_code(code: Optional[str]) -> str:
    return "".join(ch for ch in str(code or "") if ch.isdigit())


class TwoFactorEngine:
    def __init__(
        self,
        settings: Settings,
        store: UserStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock

    def _load(self, user_id: str) -> User:
        user = self.store.find_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def check_code(self, secret: Optional[str], code: Optional[str]) -> bool:
        digits = _normalize_code(code)
        if not secret or len(digits) != 6:
            return False
        try:
            return pyotp.TOTP(secret).verify(
                digits, for_time=self._clock(), valid_window=TOTP_VALID_WINDOW
            )
        except Exception as exc:
            logger.warning("totp_verify_failed", error=str(exc))
            return False

    def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        user = self._load(user_id)
        if user.two_factor_enabled:
            raise ValidationError("2FA already enabled")

        secret = pyotp.random_base32()
        # A second setup call replaces any pending secret
        self.store.update_one(
            {"id": user.id}, {"$set": {"two_factor_temp_secret": secret}}
        )
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=user.email, issuer_name=self.settings.app_name
        )
        logger.info("two_factor_setup_started", user_id=user.id)
        return TwoFactorSetup(qr_code=render_qr_data_uri(uri), secret=secret, otpauth_uri=uri)

    def verify_two_factor(self, user_id: str, code: str) -> bool:
        user = self._load(user_id)
        if not user.two_factor_temp_secret:
            raise ValidationError("No 2FA setup in progress")

        if not self.check_code(user.two_factor_temp_secret, code):
            logger.info("two_factor_enrollment_code_rejected", user_id=user.id)
            return False

        self.store.update_one(
            {"id": user.id},
            {
                "$set": {
                    "two_factor_secret": user.two_factor_temp_secret,
                    "two_factor_enabled": True,
                },
                "$unset": {"two_factor_temp_secret": ""},
            },
        )
        logger.info("two_factor_enabled", user_id=user.id)
        return True

    def verify_login_code(self, user: User, code: str) -> bool:
        if not user.two_factor_enabled:
            return False
        return self.check_code(user.two_factor_secret, code)

    def disable_two_factor(self, user_id: str) -> None:
        user = self._load(user_id)
        self.store.update_one(
            {"id": user.id},
            {
                "$set": {"two_factor_enabled": False},
                "$unset": {"two_factor_secret": "", "two_factor_temp_secret": ""},
            },
        )
        logger.info("two_factor_disabled", user_id=user.id)


__all__ = ["TOTP_VALID_WINDOW", "TwoFactorEngine", "TwoFactorSetup", "render_qr_data_uri"]
