from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from accountia_auth.config import Settings
from accountia_auth.logging import get_logger
from accountia_auth.storage.common import UserStore
from accountia_auth.storage.models import (
    MAX_REFRESH_TOKENS,
    RefreshTokenEntry,
    User,
    utcnow,
)

logger = get_logger(__name__)

TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_2FA_TEMP = "2fa-temp"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


class TokenService:
    """Issues and verifies HS256 tokens and maintains the refresh-token ring.

    Access tokens are stateless and stay valid until ``exp``; only refresh
    tokens are tracked server-side.
    """

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

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    @property
    def temp_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.temp_token_ttl_minutes)

    # -- issuance -----------------------------------------------------------

    @staticmethod
    def identity_claims(user: User) -> dict[str, Any]:
        return {
            "sub": user.id,
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "is_admin": user.is_admin,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "phone_number": user.phone_number,
        }

    def generate_tokens(self, user: User) -> TokenPair:
        now = self._clock()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        claims = self.identity_claims(user)
        iat = int(now.timestamp())
        access_token = self._encode_jwt(
            {
                **claims,
                "jti": uuid.uuid4().hex,
                "iat": iat,
                "exp": int(access_exp.timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                **claims,
                "type": TOKEN_TYPE_REFRESH,
                "jti": uuid.uuid4().hex,
                "iat": iat,
                "exp": int(refresh_exp.timestamp()),
            }
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_exp,
            refresh_token_expires_at=refresh_exp,
        )

    def generate_temp_token(self, user: User) -> str:
        """Short-lived token that proves the password step of a 2FA login."""
        now = self._clock()
        return self._encode_jwt(
            {
                "sub": user.id,
                "type": TOKEN_TYPE_2FA_TEMP,
                "jti": uuid.uuid4().hex,
                "iat": int(now.timestamp()),
                "exp": int((now + self.temp_ttl).timestamp()),
            }
        )

    # -- verification -------------------------------------------------------

    def decode(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        """Return the claims of a valid token, or None.

        ``verify_exp=False`` still checks the signature; it exists only so
        callers can tell an expired token from a forged one.
        """
        if not token or not isinstance(token, str):
            return None
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        if verify_exp:
            exp = payload.get("exp")
            try:
                exp_ts = float(exp)
            except (TypeError, ValueError):
                return None
            if exp_ts <= self._clock().timestamp():
                return None
        return payload

    # -- refresh ring -------------------------------------------------------

    def refresh_expiry(self) -> datetime:
        return self._clock() + self.refresh_ttl

    def push_refresh_token(
        self, user_id: str, token: str, expires_at: Optional[datetime] = None
    ) -> bool:
        entry = RefreshTokenEntry(token=token, expires_at=expires_at or self.refresh_expiry())
        return self.store.update_one(
            {"id": user_id},
            {
                "$push": {
                    "refresh_tokens": {
                        "$each": [entry],
                        "$slice": -MAX_REFRESH_TOKENS,
                    }
                }
            },
        )

    def rotate_refresh_token(
        self,
        user_id: str,
        old_token: str,
        new_token: str,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Swap ``old_token`` for ``new_token`` in one conditional update.

        Expired entries are dropped in the same write. Returns False when
        ``old_token`` is no longer in the ring, leaving the ring untouched.
        """
        entry = RefreshTokenEntry(token=new_token, expires_at=expires_at or self.refresh_expiry())
        return self.store.update_one(
            {"id": user_id, "refresh_tokens.token": old_token},
            {
                "$pull": {
                    "refresh_tokens": {
                        "$or": [
                            {"token": old_token},
                            {"expires_at": {"$lt": self._clock()}},
                        ]
                    }
                },
                "$push": {
                    "refresh_tokens": {
                        "$each": [entry],
                        "$slice": -MAX_REFRESH_TOKENS,
                    }
                },
            },
        )

    def revoke_refresh_token(self, user_id: str, token: str) -> bool:
        return self.store.update_one(
            {"id": user_id}, {"$pull": {"refresh_tokens": {"token": token}}}
        )

    # -- encoding -----------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload


__all__ = [
    "TOKEN_TYPE_2FA_TEMP",
    "TOKEN_TYPE_REFRESH",
    "TokenPair",
    "TokenService",
]
