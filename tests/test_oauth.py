from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from accountia_auth.service.errors import ValidationError
from accountia_auth.service.oauth import (
    GOOGLE_TOKEN_URL,
    GOOGLE_TOKENINFO_URL,
    GoogleAuthParams,
    GoogleOAuthFlow,
    extract_names,
    sanitize_username_base,
)

CLIENT_ID = "client-id.apps.googleusercontent.com"


def _google(token_info=None, token_status=200, info_status=200, error=None):
    token_info = token_info or {
        "aud": CLIENT_ID,
        "email": "Grace.Hopper@Example.com",
        "given_name": "Grace",
        "family_name": "Hopper",
        "picture": "https://example.com/grace.png",
    }
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if error is not None:
            raise error
        path = request.url.path
        if path == urlsplit(GOOGLE_TOKEN_URL).path:
            return httpx.Response(
                token_status, json={"access_token": "at", "id_token": "idt"}
            )
        if path == urlsplit(GOOGLE_TOKENINFO_URL).path:
            return httpx.Response(info_status, json=token_info)
        return httpx.Response(404)

    return httpx.MockTransport(handler), calls


def _flow(settings, store, tokens, **kwargs):
    transport, calls = _google(**kwargs)
    return GoogleOAuthFlow(settings, store, tokens, transport=transport), calls


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_auth_url_round_trips_state(oauth):
    url = oauth.get_google_auth_url(
        GoogleAuthParams(mode="register", lang="fr", redirect_uri="http://localhost:3000/fr/done")
    )
    params = _query(url)

    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert params["client_id"] == CLIENT_ID
    assert params["scope"] == "openid email profile"
    state = oauth.parse_state(params["state"])
    assert (state.mode, state.lang, state.redirect_uri) == (
        "register",
        "fr",
        "http://localhost:3000/fr/done",
    )


def test_foreign_redirect_uri_falls_back_to_frontend(oauth):
    assert (
        oauth.resolve_frontend_redirect_uri("https://evil.example.net/steal", "de")
        == "http://localhost:3000/de/auth/callback"
    )
    assert oauth.resolve_frontend_redirect_uri(None, "en") == (
        "http://localhost:3000/en/auth/callback"
    )


def test_auth_url_requires_configuration(settings, store, tokens):
    unconfigured = settings.model_copy(update={"google_client_id": None})
    flow = GoogleOAuthFlow(unconfigured, store, tokens)
    with pytest.raises(ValidationError, match="not configured"):
        flow.get_google_auth_url(GoogleAuthParams())


def test_parse_state_rejects_garbage(oauth):
    with pytest.raises(ValidationError, match="Invalid Google OAuth state"):
        oauth.parse_state("%%%not-base64")


async def test_callback_creates_confirmed_user(settings, store, tokens):
    flow, calls = _flow(settings, store, tokens)
    state = flow.encode_state(GoogleAuthParams())

    url = await flow.handle_google_callback("auth-code", state)

    assert url.startswith("http://localhost:3000/en/auth/callback?")
    params = _query(url)
    user = store.find_one({"email": "grace.hopper@example.com"})
    assert user is not None
    assert user.email_confirmed is True
    assert (user.first_name, user.last_name) == ("Grace", "Hopper")
    assert params["userId"] == user.id
    assert params["isAdmin"] == "false"
    assert tokens.decode(params["accessToken"])["sub"] == user.id
    assert user.has_refresh_token(params["refreshToken"])
    assert len(calls) == 2
    assert calls[1].url.params["id_token"] == "idt"


async def test_callback_confirms_existing_unconfirmed_user(
    settings, store, tokens, user_factory
):
    existing = user_factory(
        email="grace.hopper@example.com",
        username="ghopper",
        email_confirmed=False,
        email_token="pending",
    )
    flow, _ = _flow(settings, store, tokens)

    await flow.handle_google_callback("auth-code", flow.encode_state(GoogleAuthParams()))

    stored = store.find_by_id(existing.id)
    assert stored.email_confirmed is True
    assert stored.email_token is None


async def test_callback_failure_redirects_with_kind(settings, store, tokens):
    flow, _ = _flow(settings, store, tokens, token_status=400)

    url = await flow.handle_google_callback("bad-code", flow.encode_state(GoogleAuthParams()))

    assert url.startswith("http://localhost:3000/en/login?")
    assert _query(url) == {
        "oauthError": "google_callback_failed",
        "errorKind": "authentication",
    }


async def test_callback_audience_mismatch(settings, store, tokens):
    flow, calls = _flow(
        settings, store, tokens, token_info={"aud": "someone-else", "email": "x@example.com"}
    )
    url = await flow.handle_google_callback("code", flow.encode_state(GoogleAuthParams()))
    assert _query(url)["errorKind"] == "authentication"
    assert store.find_one({"email": "x@example.com"}) is None
    assert calls[-1].url.path == "/tokeninfo"
    assert calls[-1].url.params["id_token"] == "idt"


async def test_callback_timeout_is_infra(settings, store, tokens):
    flow, _ = _flow(settings, store, tokens, error=httpx.ConnectTimeout("slow"))
    url = await flow.handle_google_callback("code", flow.encode_state(GoogleAuthParams()))
    assert _query(url)["errorKind"] == "infra"


async def test_callback_missing_params(oauth):
    url = await oauth.handle_google_callback(None, None)
    assert _query(url)["errorKind"] == "validation"


def test_extract_names_fallbacks():
    assert extract_names({"given_name": "Ada", "family_name": "Lovelace"}) == ("Ada", "Lovelace")
    assert extract_names({"name": "Alan Mathison Turing"}) == ("Alan", "Mathison Turing")
    assert extract_names({"name": "Cher"}) == ("Cher", "User")
    assert extract_names({}) == ("Google", "User")


def test_username_generation(oauth, user_factory):
    assert sanitize_username_base("Grace.Hopper+tag") == "grace-hopper-tag"
    assert sanitize_username_base("al") == "user-al"

    user_factory(username="grace-hopper", email="other@example.com")
    generated = oauth.generate_unique_username("grace.hopper")

    assert generated != "grace-hopper"
    assert generated.startswith("grace-hopper-")
    assert len(generated) <= 20
