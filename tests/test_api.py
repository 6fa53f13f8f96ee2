from datetime import date
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from accountia_auth.app import app
from accountia_auth.service.passwords import hash_password
from accountia_auth.service.runtime import get_runtime
from accountia_auth.storage.models import User

PASSWORD = "CorrectHorse1!"


@pytest.fixture
def client():
    return TestClient(app)


def _create_user(**overrides) -> User:
    fields = {
        "username": "apiuser1",
        "email": "api@example.com",
        "password_hash": hash_password(PASSWORD),
        "first_name": "Api",
        "last_name": "User",
        "birthdate": date(1992, 7, 1),
        "accept_terms": True,
        "email_confirmed": True,
    }
    fields.update(overrides)
    return get_runtime().store.save(User.new(**fields))


def _login(client, email="api@example.com"):
    resp = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_register_confirm_and_login(client):
    resp = client.post(
        "/api/auth/register",
        json={
            "username": "freshuser",
            "email": "Fresh@Example.com",
            "password": "s3cret-pw",
            "firstName": "Fresh",
            "lastName": "User",
            "birthdate": "1999-12-31",
            "acceptTerms": True,
        },
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["email"] == "fresh@example.com"

    blocked = client.post(
        "/api/auth/login", json={"email": "fresh@example.com", "password": "s3cret-pw"}
    )
    assert blocked.status_code == 403

    token = get_runtime().store.find_one({"email": "fresh@example.com"}).email_token
    page = client.get(f"/api/auth/confirm-email/{token}")
    assert page.status_code == 200
    assert "Email confirmed" in page.text

    login = client.post(
        "/api/auth/login", json={"email": "fresh@example.com", "password": "s3cret-pw"}
    )
    assert login.status_code == 200
    data = login.json()["data"]
    assert data["user"]["username"] == "freshuser"
    assert data["user"]["isAdmin"] is False
    assert data["accessTokenExpiresAt"].endswith("Z")


def test_register_duplicate_returns_conflict_details(client):
    _create_user()
    resp = client.post(
        "/api/auth/register",
        json={
            "username": "apiuser1",
            "email": "someone@example.com",
            "password": "s3cret-pw",
            "firstName": "Api",
            "lastName": "User",
            "birthdate": "1992-07-01",
            "acceptTerms": True,
        },
    )
    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "conflict"
    assert error["details"] == {"type": "ACCOUNT_EXISTS"}


def test_invalid_body_is_validation_error(client):
    resp = client.post("/api/auth/login", json={"email": "not-an-email"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"


def test_confirm_email_with_bad_token_renders_failure(client):
    page = client.get("/api/auth/confirm-email/unknown")
    assert page.status_code == 400
    assert "Invalid confirmation token" in page.text


def test_profile_requires_bearer_token(client):
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_profile_update_and_delete(client):
    _create_user()
    session = _login(client)
    headers = _bearer(session["accessToken"])

    me = client.get("/api/auth/me", headers=headers).json()["data"]
    assert me["email"] == "api@example.com"
    assert me["twoFactorEnabled"] is False

    updated = client.patch(
        "/api/auth/update", json={"firstName": "Renamed"}, headers=headers
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["firstName"] == "Renamed"

    deleted = client.delete("/api/auth/delete", headers=headers)
    assert deleted.status_code == 200
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_refresh_and_logout(client):
    _create_user()
    session = _login(client)

    refreshed = client.post(
        "/api/auth/refresh", json={"refreshToken": session["refreshToken"]}
    )
    assert refreshed.status_code == 200
    new_refresh = refreshed.json()["data"]["refreshToken"]

    reused = client.post("/api/auth/refresh", json={"refreshToken": session["refreshToken"]})
    assert reused.status_code == 401

    logout = client.post(
        "/api/auth/logout",
        json={"refreshToken": new_refresh},
        headers=_bearer(session["accessToken"]),
    )
    assert logout.status_code == 200
    assert client.post(
        "/api/auth/refresh", headers=_bearer(new_refresh)
    ).status_code == 401


def test_admin_delete_requires_admin(client):
    _create_user()
    target = _create_user(username="target01", email="target@example.com")
    session = _login(client)

    resp = client.delete(
        f"/api/auth/users/{target.id}", headers=_bearer(session["accessToken"])
    )
    assert resp.status_code == 403

    _create_user(username="admin001", email="admin@example.com", is_admin=True)
    admin = _login(client, "admin@example.com")
    resp = client.delete(
        f"/api/auth/users/{target.id}", headers=_bearer(admin["accessToken"])
    )
    assert resp.status_code == 200
    assert get_runtime().store.find_by_id(target.id) is None


def test_login_rate_limit_sets_retry_after(client):
    _create_user()
    for _ in range(5):
        client.post("/api/auth/login", json={"email": "api@example.com", "password": "wrong"})

    resp = client.post("/api/auth/login", json={"email": "api@example.com", "password": PASSWORD})

    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) > 0


def test_two_factor_setup_requires_auth_and_returns_qr(client):
    _create_user()
    session = _login(client)

    resp = client.post("/api/auth/2fa/setup", headers=_bearer(session["accessToken"]))

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["qrCode"].startswith("data:image/png;base64,")
    assert data["secret"]


def test_google_callback_failure_redirects_to_login(client):
    resp = client.get("/api/auth/google/callback", follow_redirects=False)

    assert resp.status_code == 302
    location = urlsplit(resp.headers["location"])
    assert location.path == "/en/login"
    assert parse_qs(location.query)["oauthError"] == ["google_callback_failed"]


def test_google_unconfigured_is_validation_error(client):
    resp = client.get("/api/auth/google", follow_redirects=False)
    assert resp.status_code == 400
    assert "not configured" in resp.json()["error"]["message"]


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
