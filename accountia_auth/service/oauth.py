from __future__ import annotations

import base64
import json
import re
import secrets
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import httpx

from accountia_auth.config import Settings
from accountia_auth.logging import get_logger, sanitize_error_message
from accountia_auth.service.errors import (
    AuthError,
    AuthenticationError,
    AuthErrorKind,
    InfraError,
    ValidationError,
)
from accountia_auth.service.passwords import hash_password
from accountia_auth.service.results import format_timestamp
from accountia_auth.service.tokens import TokenService
from accountia_auth.storage.common import UserStore
from accountia_auth.storage.errors import ConstraintViolation
from accountia_auth.storage.models import User

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_SCOPE = "openid email profile"

OAUTH_MODES = {"login", "register"}
USERNAME_MAX_LENGTH = 20
USERNAME_MIN_LENGTH = 5
USERNAME_RETRIES = 20
GOOGLE_USER_BIRTHDATE = date(2000, 1, 1)
CALLBACK_ERROR_CODE = "google_callback_failed"


@dataclass(frozen=True)
class GoogleAuthParams:
    mode: str = "login"
    lang: str = "en"
    redirect_uri: Optional[str] = None


@dataclass(frozen=True)
class OAuthState:
    mode: str
    lang: str
    redirect_uri: str


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _with_query(url: str, params: dict[str, str]) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update(params)
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment)
    )


def extract_names(token_info: dict[str, Any]) -> tuple[str, str]:
    first = (token_info.get("given_name") or "").strip()
    last = (token_info.get("family_name") or "").strip()
    if first and last:
        return first, last

    full_name = (token_info.get("name") or "").strip()
    if full_name:
        head, _, rest = full_name.partition(" ")
        return head or "Google", rest or "User"

    return "Google", "User"


def sanitize_username_base(base: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_-]", "-", base.lower())
    cleaned = re.sub(r"-+", "-", cleaned)
    cleaned = cleaned[:USERNAME_MAX_LENGTH].strip("-")
    if len(cleaned) >= USERNAME_MIN_LENGTH:
        return cleaned
    return f"user-{cleaned}"[:USERNAME_MAX_LENGTH]


class GoogleOAuthFlow:
    """Google sign-in: authorization URL, callback exchange, account linking.

    The OAuth ``state`` round-trips ``{mode, lang, redirectUri}`` as base64url
    JSON; nothing is stored server-side. Redirect targets are always confined
    to the configured frontend origin.
    """

    def __init__(
        self,
        settings: Settings,
        store: UserStore,
        tokens: TokenService,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self._transport = transport

    # -- redirects and state ------------------------------------------------

    def resolve_frontend_redirect_uri(self, requested: Optional[str], lang: str) -> str:
        origin = self.settings.frontend_origin
        fallback = f"{origin}/{quote(lang, safe='')}/auth/callback"
        if not requested:
            return fallback
        try:
            parts = urlsplit(requested)
        except ValueError:
            return fallback
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            return fallback
        if f"{parts.scheme}://{parts.netloc}".lower() != origin.lower():
            return fallback
        return requested

    def encode_state(self, params: GoogleAuthParams) -> str:
        payload = {
            "mode": params.mode,
            "lang": params.lang,
            "redirectUri": self.resolve_frontend_redirect_uri(
                params.redirect_uri, params.lang
            ),
        }
        return _b64url_encode(json.dumps(payload, separators=(",", ":")).encode())

    def parse_state(self, state: str) -> OAuthState:
        try:
            parsed = json.loads(_b64url_decode(state).decode("utf-8"))
        except Exception as exc:
            raise ValidationError("Invalid Google OAuth state") from exc
        if not isinstance(parsed, dict):
            raise ValidationError("Invalid Google OAuth state")
        mode = parsed.get("mode")
        lang = parsed.get("lang")
        redirect_uri = parsed.get("redirectUri")
        if (
            mode not in OAUTH_MODES
            or not isinstance(lang, str)
            or not lang
            or not isinstance(redirect_uri, str)
            or not redirect_uri
        ):
            raise ValidationError("Invalid Google OAuth state")
        return OAuthState(
            mode=mode,
            lang=lang,
            redirect_uri=self.resolve_frontend_redirect_uri(redirect_uri, lang),
        )

    def callback_failure_url(self, kind: Optional[AuthErrorKind] = None) -> str:
        params = {"oauthError": CALLBACK_ERROR_CODE}
        if kind is not None:
            params["errorKind"] = kind.value
        return _with_query(f"{self.settings.frontend_origin}/en/login", params)

    # -- public operations --------------------------------------------------

    def get_google_auth_url(self, params: GoogleAuthParams) -> str:
        if not self.settings.google_client_id or not self.settings.google_callback_url:
            raise ValidationError("Google OAuth is not configured on the server")
        if params.mode not in OAUTH_MODES:
            raise ValidationError("mode must be login or register")
        query = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_callback_url,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": self.encode_state(params),
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(query)}"

    async def handle_google_callback(
        self, code: Optional[str], state: Optional[str]
    ) -> str:
        """Complete the callback and return the frontend redirect URL.

        Never raises: any failure yields the login page with ``oauthError``
        set and, when known, the failure kind.
        """
        try:
            return await self._complete_callback(code, state)
        except AuthError as exc:
            logger.warning(
                "google_callback_failed", kind=exc.kind.value, error=exc.message
            )
            return self.callback_failure_url(exc.kind)
        except Exception as exc:
            logger.error(
                "google_callback_unexpected_error",
                error=sanitize_error_message(str(exc)),
            )
            return self.callback_failure_url(AuthErrorKind.INFRA)

    async def _complete_callback(
        self, code: Optional[str], state: Optional[str]
    ) -> str:
        if not code or not state:
            raise ValidationError("Missing Google OAuth callback parameters")
        state_data = self.parse_state(state)
        if not self.settings.google_oauth_configured:
            raise ValidationError("Google OAuth is not configured on the server")

        token_info = await self._exchange_code(code)
        user = self.find_or_create_google_user(token_info)
        pair = self.tokens.generate_tokens(user)
        if not self.tokens.push_refresh_token(
            user.id, pair.refresh_token, pair.refresh_token_expires_at
        ):
            raise InfraError("Unable to persist session")

        logger.info("google_login_success", user_id=user.id, mode=state_data.mode)
        return _with_query(
            state_data.redirect_uri,
            {
                "accessToken": pair.access_token,
                "refreshToken": pair.refresh_token,
                "accessTokenExpiresAt": format_timestamp(pair.access_token_expires_at),
                "refreshTokenExpiresAt": format_timestamp(
                    pair.refresh_token_expires_at
                ),
                "userId": user.id,
                "role": user.role,
                "isAdmin": "true" if user.is_admin else "false",
            },
        )

    # -- provider calls -----------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_http_timeout_seconds,
            verify=not self.settings.google_oauth_allow_insecure_tls,
            follow_redirects=False,
            transport=self._transport,
        )

    async def _exchange_code(self, code: str) -> dict[str, Any]:
        try:
            async with self._client() as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "code": code,
                        "client_id": self.settings.google_client_id,
                        "client_secret": self.settings.google_client_secret,
                        "redirect_uri": self.settings.google_callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                if not token_response.is_success:
                    logger.warning(
                        "google_token_exchange_rejected",
                        status_code=token_response.status_code,
                    )
                    raise AuthenticationError("Failed to exchange Google auth code")
                token_data = self._json_object(token_response)
                id_token = token_data.get("id_token")
                if not id_token or not token_data.get("access_token"):
                    raise AuthenticationError("Google token response is invalid")

                info_response = await client.get(
                    GOOGLE_TOKENINFO_URL, params={"id_token": id_token}
                )
                if not info_response.is_success:
                    logger.warning(
                        "google_tokeninfo_rejected",
                        status_code=info_response.status_code,
                    )
                    raise AuthenticationError("Failed to verify Google identity token")
                token_info = self._json_object(info_response)
        except httpx.TimeoutException as exc:
            raise InfraError("Google did not respond in time") from exc
        except httpx.HTTPError as exc:
            raise InfraError("Unable to reach Google") from exc

        if token_info.get("aud") != self.settings.google_client_id or not token_info.get(
            "email"
        ):
            raise AuthenticationError("Google identity token is not valid")
        return token_info

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise AuthenticationError("Google returned a malformed response") from exc
        if not isinstance(body, dict):
            raise AuthenticationError("Google returned a malformed response")
        return body

    # -- account linking ----------------------------------------------------

    def find_or_create_google_user(self, token_info: dict[str, Any]) -> User:
        email = str(token_info["email"]).strip().lower()
        existing = self.store.find_one({"email": email})
        if existing:
            if not existing.email_confirmed:
                updated = self.store.find_by_id_and_update(
                    existing.id,
                    {"$set": {"email_confirmed": True}, "$unset": {"email_token": ""}},
                )
                logger.info("google_login_confirmed_email", user_id=existing.id)
                return updated or existing
            return existing

        first_name, last_name = extract_names(token_info)
        user = User.new(
            username=self.generate_unique_username(email.split("@")[0] or "accountia-user"),
            email=email,
            password_hash=hash_password(secrets.token_hex(32)),
            first_name=first_name,
            last_name=last_name,
            birthdate=GOOGLE_USER_BIRTHDATE,
            accept_terms=True,
            profile_picture=token_info.get("picture"),
            email_confirmed=True,
            is_admin=False,
        )
        try:
            saved = self.store.save(user)
        except ConstraintViolation as exc:
            raise InfraError("Unable to create Google account") from exc
        logger.info("google_user_created", user_id=saved.id)
        return saved

    def generate_unique_username(self, base: str) -> str:
        root = sanitize_username_base(base)
        candidate = root
        for _ in range(USERNAME_RETRIES):
            if not self.store.find_one({"username": candidate}):
                return candidate
            suffix = f"-{secrets.token_hex(2)}"
            candidate = f"{root[: max(USERNAME_MIN_LENGTH, USERNAME_MAX_LENGTH - len(suffix))]}{suffix}"
        return f"user-{secrets.token_hex(4)}"


__all__ = [
    "GOOGLE_AUTH_URL",
    "GOOGLE_TOKENINFO_URL",
    "GOOGLE_TOKEN_URL",
    "GoogleAuthParams",
    "GoogleOAuthFlow",
    "OAuthState",
    "extract_names",
    "sanitize_username_base",
]
