import base64
import json
from datetime import timedelta

from accountia_auth.service.tokens import TOKEN_TYPE_2FA_TEMP, TOKEN_TYPE_REFRESH
from accountia_auth.storage.models import MAX_REFRESH_TOKENS


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def test_access_token_carries_identity_claims(tokens, confirmed_user):
    pair = tokens.generate_tokens(confirmed_user)

    claims = tokens.decode(pair.access_token)

    assert claims["sub"] == confirmed_user.id
    assert claims["email"] == "alice@example.com"
    assert claims["role"] == "user"
    assert claims["is_admin"] is False
    assert "type" not in claims


def test_refresh_token_is_typed_and_unique(tokens, confirmed_user):
    first = tokens.generate_tokens(confirmed_user)
    second = tokens.generate_tokens(confirmed_user)

    assert tokens.decode(first.refresh_token)["type"] == TOKEN_TYPE_REFRESH
    assert first.refresh_token != second.refresh_token
    assert first.refresh_token_expires_at > first.access_token_expires_at


def test_temp_token_expires_after_five_minutes(tokens, confirmed_user, clock):
    token = tokens.generate_temp_token(confirmed_user)
    assert tokens.decode(token)["type"] == TOKEN_TYPE_2FA_TEMP

    clock.advance(minutes=5, seconds=1)

    assert tokens.decode(token) is None
    assert tokens.decode(token, verify_exp=False)["sub"] == confirmed_user.id


def test_tampered_signature_rejected(tokens, confirmed_user):
    token = tokens.generate_tokens(confirmed_user).access_token
    header, _, signature = token.split(".")
    forged_payload = _b64({"sub": confirmed_user.id, "role": "admin", "exp": 9999999999})

    assert tokens.decode(f"{header}.{forged_payload}.{signature}") is None


def test_non_hs256_algorithm_rejected(tokens):
    unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64({'sub': 'x', 'exp': 9999999999})}."
    assert tokens.decode(unsigned) is None
    assert tokens.decode("not-a-token") is None
    assert tokens.decode("") is None


def test_refresh_ring_keeps_newest_ten(tokens, store, confirmed_user):
    issued = []
    for _ in range(MAX_REFRESH_TOKENS + 2):
        pair = tokens.generate_tokens(confirmed_user)
        tokens.push_refresh_token(confirmed_user.id, pair.refresh_token)
        issued.append(pair.refresh_token)

    stored = [entry.token for entry in store.find_by_id(confirmed_user.id).refresh_tokens]

    assert stored == issued[-MAX_REFRESH_TOKENS:]


def test_rotation_drops_old_and_expired_tokens(tokens, store, confirmed_user, clock):
    stale = tokens.generate_tokens(confirmed_user)
    tokens.push_refresh_token(
        confirmed_user.id, stale.refresh_token, clock.now - timedelta(days=1)
    )
    current = tokens.generate_tokens(confirmed_user)
    tokens.push_refresh_token(confirmed_user.id, current.refresh_token)
    replacement = tokens.generate_tokens(confirmed_user)

    assert tokens.rotate_refresh_token(
        confirmed_user.id, current.refresh_token, replacement.refresh_token
    )

    stored = [entry.token for entry in store.find_by_id(confirmed_user.id).refresh_tokens]
    assert stored == [replacement.refresh_token]


def test_rotated_token_cannot_be_rotated_again(tokens, store, confirmed_user):
    tokens.push_refresh_token(confirmed_user.id, "rt-old")

    assert tokens.rotate_refresh_token(confirmed_user.id, "rt-old", "rt-first") is True
    assert tokens.rotate_refresh_token(confirmed_user.id, "rt-old", "rt-second") is False

    stored = [entry.token for entry in store.find_by_id(confirmed_user.id).refresh_tokens]
    assert stored == ["rt-first"]


def test_rotation_for_missing_user(tokens):
    assert tokens.rotate_refresh_token("missing", "old", "new") is False


def test_revoke_refresh_token(tokens, store, confirmed_user):
    pair = tokens.generate_tokens(confirmed_user)
    tokens.push_refresh_token(confirmed_user.id, pair.refresh_token)

    tokens.revoke_refresh_token(confirmed_user.id, pair.refresh_token)

    assert store.find_by_id(confirmed_user.id).refresh_tokens == []
