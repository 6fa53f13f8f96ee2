from __future__ import annotations

import base64
import copy
import hashlib
import json
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from accountia_auth.logging import get_logger
from accountia_auth.storage.common import (
    Filter,
    Patch,
    apply_patch,
    enforce_refresh_cap,
    matches,
    unique_field_conflict,
)
from accountia_auth.storage.errors import ConstraintViolation
from accountia_auth.storage.models import RefreshTokenEntry, User, utcnow


class MemoryUserStore:
    """In-process user store with optional JSON persistence.

    Every public method holds ``_data_lock`` for its whole duration, so a
    single ``update_one`` call (``$pull`` then cap, ``$push`` with ``$slice``)
    is atomic with respect to other callers. Records are copied on the way in
    and out; callers never share mutable state with the store.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can re-enter while a public call holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.fs_root is not None:
            if self._mfa_cipher is None:
                raise RuntimeError(
                    "MFA encryption key required when persisting user state"
                )
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- lookups ------------------------------------------------------------

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def find_one(self, filter: Filter) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if matches(user, filter):
                    return copy.deepcopy(user)
            return None

    # -- writes -------------------------------------------------------------

    def save(self, user: User) -> User:
        """Insert or replace ``user`` by id, enforcing unique email/username."""
        with self._data_lock:
            stored = copy.deepcopy(user)
            conflict = unique_field_conflict(stored, self.users)
            if conflict:
                raise ConstraintViolation(
                    f"{conflict} already exists", {"field": conflict}
                )
            enforce_refresh_cap(stored)
            stored.updated_at = utcnow()
            self.users[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def update_one(self, filter: Filter, patch: Patch) -> bool:
        with self._data_lock:
            for user_id, user in self.users.items():
                if matches(user, filter):
                    self._apply(user_id, patch)
                    return True
            return False

    def find_by_id_and_update(self, user_id: str, patch: Patch) -> Optional[User]:
        with self._data_lock:
            if user_id not in self.users:
                return None
            return copy.deepcopy(self._apply(user_id, patch))

    def delete_one(self, filter: Filter) -> bool:
        with self._data_lock:
            for user_id, user in list(self.users.items()):
                if matches(user, filter):
                    del self.users[user_id]
                    self._persist_state()
                    return True
            return False

    def find_by_id_and_delete(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed is not None:
                self._persist_state()
            return removed

    def _apply(self, user_id: str, patch: Patch) -> User:
        updated = apply_patch(copy.deepcopy(self.users[user_id]), patch, now=utcnow())
        conflict = unique_field_conflict(updated, self.users)
        if conflict:
            raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
        self.users[user_id] = updated
        self._persist_state()
        return updated

    # -- persistence --------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Optional[Fernet]:
        if not key_material:
            return None
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        if not self._mfa_cipher:
            raise RuntimeError("MFA cipher unavailable; secret cannot be stored")
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        if not self._mfa_cipher:
            raise RuntimeError("MFA cipher unavailable; cannot decrypt secret")
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist user state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.logger.info("user_state_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "birthdate": user.birthdate.isoformat(),
            "accept_terms": user.accept_terms,
            "phone_number": user.phone_number,
            "profile_picture": user.profile_picture,
            "is_admin": user.is_admin,
            "email_confirmed": user.email_confirmed,
            "email_token": user.email_token,
            "email_confirmation_attempts": user.email_confirmation_attempts,
            "last_email_attempt_time": self._serialize_datetime(
                user.last_email_attempt_time
            ),
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_secret": self._encrypt_mfa_secret(user.two_factor_secret),
            "two_factor_temp_secret": self._encrypt_mfa_secret(
                user.two_factor_temp_secret
            ),
            "password_reset_token": user.password_reset_token,
            "password_reset_expires": self._serialize_datetime(
                user.password_reset_expires
            ),
            "failed_login_attempts": user.failed_login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "refresh_tokens": [
                {
                    "token": entry.token,
                    "expires_at": self._serialize_datetime(entry.expires_at),
                }
                for entry in user.refresh_tokens
            ],
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            birthdate=date.fromisoformat(data["birthdate"]),
            accept_terms=data.get("accept_terms", False),
            phone_number=data.get("phone_number"),
            profile_picture=data.get("profile_picture"),
            is_admin=data.get("is_admin", False),
            email_confirmed=data.get("email_confirmed", False),
            email_token=data.get("email_token"),
            email_confirmation_attempts=data.get("email_confirmation_attempts", 0),
            last_email_attempt_time=self._deserialize_datetime(
                data.get("last_email_attempt_time")
            ),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_secret=self._decrypt_mfa_secret(data.get("two_factor_secret")),
            two_factor_temp_secret=self._decrypt_mfa_secret(
                data.get("two_factor_temp_secret")
            ),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires=self._deserialize_datetime(
                data.get("password_reset_expires")
            ),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            refresh_tokens=[
                RefreshTokenEntry(
                    token=entry["token"],
                    expires_at=self._deserialize_datetime(entry["expires_at"]),
                )
                for entry in data.get("refresh_tokens", [])
            ],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )


__all__ = ["MemoryUserStore"]
