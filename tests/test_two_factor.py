"""Tests for TOTP enrollment, login-code checks and disable."""

import time

import pyotp
import pytest

from accountia_auth.service.errors import NotFoundError, ValidationError


def test_setup_parks_pending_secret(two_factor, store, confirmed_user):
    setup = two_factor.setup_two_factor(confirmed_user.id)

    stored = store.find_by_id(confirmed_user.id)
    assert stored.two_factor_temp_secret == setup.secret
    assert stored.two_factor_enabled is False
    assert setup.qr_code.startswith("data:image/png;base64,")
    assert setup.otpauth_uri.startswith("otpauth://totp/")
    assert "issuer=Accountia" in setup.otpauth_uri


def test_setup_for_unknown_user(two_factor):
    with pytest.raises(NotFoundError):
        two_factor.setup_two_factor("missing")


def test_setup_rejected_when_already_enabled(two_factor, user_factory):
    user = user_factory(two_factor_enabled=True, two_factor_secret=pyotp.random_base32())
    with pytest.raises(ValidationError, match="2FA already enabled"):
        two_factor.setup_two_factor(user.id)


def test_second_setup_replaces_pending_secret(two_factor, store, confirmed_user):
    first = two_factor.setup_two_factor(confirmed_user.id)
    second = two_factor.setup_two_factor(confirmed_user.id)

    assert first.secret != second.secret
    assert store.find_by_id(confirmed_user.id).two_factor_temp_secret == second.secret


def test_verify_without_setup(two_factor, confirmed_user):
    with pytest.raises(ValidationError, match="No 2FA setup in progress"):
        two_factor.verify_two_factor(confirmed_user.id, "123456")


def test_wrong_code_keeps_pending_secret(two_factor, store, confirmed_user):
    setup = two_factor.setup_two_factor(confirmed_user.id)
    totp = pyotp.TOTP(setup.secret)
    current = {totp.at(time.time(), offset) for offset in (-1, 0, 1)}
    wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in current)

    assert two_factor.verify_two_factor(confirmed_user.id, wrong) is False

    stored = store.find_by_id(confirmed_user.id)
    assert stored.two_factor_temp_secret == setup.secret
    assert stored.two_factor_enabled is False


def test_valid_code_enables_two_factor(two_factor, store, confirmed_user):
    setup = two_factor.setup_two_factor(confirmed_user.id)

    assert two_factor.verify_two_factor(confirmed_user.id, pyotp.TOTP(setup.secret).now())

    stored = store.find_by_id(confirmed_user.id)
    assert stored.two_factor_enabled is True
    assert stored.two_factor_secret == setup.secret
    assert stored.two_factor_temp_secret is None


def test_check_code_rejects_malformed_input(two_factor):
    secret = pyotp.random_base32()
    assert two_factor.check_code(secret, "12345") is False
    assert two_factor.check_code(secret, "") is False
    assert two_factor.check_code(None, "123456") is False


def test_check_code_accepts_spaced_code(two_factor):
    secret = pyotp.random_base32()
    code = pyotp.TOTP(secret).now()
    assert two_factor.check_code(secret, f"{code[:3]} {code[3:]}")


def test_verify_login_code_requires_enabled(two_factor, user_factory):
    secret = pyotp.random_base32()
    user = user_factory(two_factor_enabled=False, two_factor_secret=secret)
    assert two_factor.verify_login_code(user, pyotp.TOTP(secret).now()) is False


def test_disable_clears_secrets(two_factor, store, user_factory):
    user = user_factory(two_factor_enabled=True, two_factor_secret=pyotp.random_base32())

    two_factor.disable_two_factor(user.id)

    stored = store.find_by_id(user.id)
    assert stored.two_factor_enabled is False
    assert stored.two_factor_secret is None
