from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from accountia_auth.api.schemas import (
    AuthResponse,
    AuthUserResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegistrationResponse,
    ResendConfirmationRequest,
    ResetPasswordRequest,
    TwoFactorChallengeResponse,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
    UpdateUserRequest,
    UserProfileResponse,
)
from accountia_auth.service.email import render_email_confirmed_page
from accountia_auth.service.errors import AuthenticationError
from accountia_auth.service.oauth import GoogleAuthParams
from accountia_auth.service.results import (
    AuthContext,
    AuthResult,
    RegisterInput,
    TwoFactorChallenge,
    UpdateUserInput,
    format_timestamp,
)
from accountia_auth.service.runtime import get_runtime
from accountia_auth.storage.models import User

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _ok(data) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True, mode="json")
    return Envelope(status="ok", data=data)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _auth_response(result: AuthResult) -> AuthResponse:
    user = result.user
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        access_token_expires_at=format_timestamp(result.access_token_expires_at),
        refresh_token_expires_at=format_timestamp(result.refresh_token_expires_at),
        user=AuthUserResponse(
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
        ),
    )


def _profile(user: User) -> UserProfileResponse:
    return UserProfileResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        birthdate=user.birthdate,
        date_joined=user.created_at,
        phone_number=user.phone_number,
        profile_picture=user.profile_picture,
        email_confirmed=user.email_confirmed,
        two_factor_enabled=user.two_factor_enabled,
        is_admin=user.is_admin,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Missing bearer token")
    return await get_runtime().auth.authenticate(token)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    get_runtime().auth.require_admin(principal)
    return principal


# -- Google ------------------------------------------------------------------


@router.get("/google")
async def google_auth(
    mode: str = Query("login"),
    lang: str = Query("en", max_length=16),
    redirect_uri: Optional[str] = Query(None, alias="redirectUri", max_length=2048),
):
    """Redirect the browser to Google's consent screen."""
    url = get_runtime().auth.get_google_auth_url(
        GoogleAuthParams(mode=mode, lang=lang, redirect_uri=redirect_uri)
    )
    return RedirectResponse(url, status_code=302)


@router.get("/google/callback")
async def google_callback(
    code: Optional[str] = Query(None), state: Optional[str] = Query(None)
):
    """Finish the Google flow. Always a 302, to the app or to the login page."""
    url = await get_runtime().auth.handle_google_callback(code, state)
    return RedirectResponse(url, status_code=302)


# -- registration and login ----------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    result = await get_runtime().auth.register(
        RegisterInput(
            username=body.username,
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            birthdate=body.birthdate,
            accept_terms=body.accept_terms,
            phone_number=body.phone_number,
            profile_picture=body.profile_picture,
        )
    )
    return _ok(RegistrationResponse(message=result.message, email=result.email))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    """Password login.

    Returns either a full session or, for accounts with two-factor enabled,
    a short-lived ``tempToken`` to exchange at ``/2fa/login``.
    """
    outcome = await get_runtime().auth.login(body.email, body.password, _client_ip(request))
    if isinstance(outcome, TwoFactorChallenge):
        return _ok(TwoFactorChallengeResponse(temp_token=outcome.temp_token))
    return _ok(_auth_response(outcome))


@router.post("/2fa/login", response_model=Envelope)
async def two_factor_login(body: TwoFactorLoginRequest, request: Request):
    result = await get_runtime().auth.two_factor_login(
        body.temp_token, body.code, _client_ip(request)
    )
    return _ok(_auth_response(result))


@router.post("/2fa/setup", response_model=Envelope)
async def two_factor_setup(principal: AuthContext = Depends(get_user)):
    setup = await get_runtime().auth.setup_two_factor(principal.user_id)
    return _ok(TwoFactorSetupResponse(qr_code=setup.qr_code, secret=setup.secret))


@router.post("/2fa/verify", response_model=Envelope)
async def two_factor_verify(
    body: TwoFactorVerifyRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    enabled = await get_runtime().auth.verify_two_factor(
        principal.user_id, body.code, ip=_client_ip(request)
    )
    return _ok(TwoFactorVerifyResponse(enabled=enabled))


@router.post("/2fa/disable", response_model=Envelope)
async def two_factor_disable(principal: AuthContext = Depends(get_user)):
    await get_runtime().auth.disable_two_factor(principal.user_id)
    return _ok(MessageResponse(message="Two-factor authentication disabled"))


# -- sessions ----------------------------------------------------------------


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    await get_runtime().auth.logout(principal.user_id, body.refresh_token)
    return _ok(MessageResponse(message="Logout successful"))


@router.post("/refresh", response_model=Envelope)
async def refresh(
    body: Optional[RefreshRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Rotate a refresh token. Accepts it in the body or as a bearer token."""
    token = (body.refresh_token if body else None) or _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Invalid refresh token")
    result = await get_runtime().auth.refresh_tokens(token)
    return _ok(_auth_response(result))


# -- password reset and email confirmation -------------------------------------


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest):
    await get_runtime().auth.forgot_password(body.email)
    return _ok(
        MessageResponse(
            message="If that email is registered, a password reset link has been sent"
        )
    )


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().auth.reset_password(body.token, body.new_password)
    return _ok(MessageResponse(message="Password reset successful"))


@router.get("/confirm-email/{token}", response_class=HTMLResponse)
async def confirm_email(token: str):
    runtime = get_runtime()
    result = await runtime.auth.confirm_email(token)
    return HTMLResponse(
        render_email_confirmed_page(
            result.success, result.message, runtime.settings.frontend_url
        ),
        status_code=200 if result.success else 400,
    )


@router.post("/resend-confirmation-email", response_model=Envelope)
async def resend_confirmation_email(body: ResendConfirmationRequest):
    message = await get_runtime().auth.resend_confirmation_email(body.email)
    return _ok(MessageResponse(message=message))


# -- profile -----------------------------------------------------------------


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_user)):
    user = await get_runtime().auth.fetch_user(principal.user_id)
    return _ok(_profile(user))


@router.api_route("/update", methods=["PUT", "PATCH"], response_model=Envelope)
async def update_user(body: UpdateUserRequest, principal: AuthContext = Depends(get_user)):
    user = await get_runtime().auth.update_user(
        principal.user_id,
        UpdateUserInput(**body.model_dump(exclude_none=True)),
    )
    return _ok(_profile(user))


@router.delete("/delete", response_model=Envelope)
async def delete_account(principal: AuthContext = Depends(get_user)):
    await get_runtime().auth.delete_user(principal.user_id)
    return _ok(MessageResponse(message="Account deleted successfully"))


@router.delete("/users/{user_id}", response_model=Envelope)
async def delete_user_by_admin(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    await get_runtime().auth.delete_user_by_admin(principal.user_id, user_id)
    return _ok(MessageResponse(message="User deleted successfully"))
