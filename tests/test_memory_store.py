import json
from datetime import date, timedelta

import pytest

from accountia_auth.storage.common import matches
from accountia_auth.storage.errors import ConstraintViolation, UnsupportedOperator
from accountia_auth.storage.memory import MemoryUserStore
from accountia_auth.storage.models import RefreshTokenEntry, User, utcnow


def _user(**overrides):
    fields = {
        "username": "carol01",
        "email": "carol@example.com",
        "password_hash": "hash",
        "first_name": "Carol",
        "last_name": "Shaw",
        "birthdate": date(1985, 3, 4),
    }
    fields.update(overrides)
    return User.new(**fields)


def test_records_are_copied_in_and_out(store):
    saved = store.save(_user())
    saved.first_name = "Mutated"

    assert store.find_by_id(saved.id).first_name == "Carol"


def test_unique_email_and_username(store):
    store.save(_user())
    with pytest.raises(ConstraintViolation) as exc_info:
        store.save(_user(username="other01"))
    assert exc_info.value.detail == {"field": "email"}
    with pytest.raises(ConstraintViolation):
        store.save(_user(email="other@example.com"))


def test_update_one_operators(store):
    user = store.save(_user())

    assert store.update_one(
        {"id": user.id},
        {
            "$set": {"first_name": "Caroline"},
            "$inc": {"failed_login_attempts": 2},
            "$unset": {"email_token": ""},
        },
    )
    stored = store.find_by_id(user.id)
    assert stored.first_name == "Caroline"
    assert stored.failed_login_attempts == 2
    assert stored.updated_at is not None
    assert store.update_one({"id": "missing"}, {"$set": {"first_name": "x"}}) is False


def test_filters_with_comparisons_and_or(store):
    now = utcnow()
    user = store.save(_user(password_reset_token="r1", password_reset_expires=now + timedelta(hours=1)))

    assert store.find_one({"password_reset_token": "r1", "password_reset_expires": {"$gt": now}})
    assert store.find_one({"$or": [{"email": "nobody@example.com"}, {"username": "carol01"}]}).id == user.id
    assert store.find_one({"password_reset_expires": {"$lt": now}}) is None


def test_dotted_path_matches_list_items(store):
    entry = RefreshTokenEntry(token="rt-1", expires_at=utcnow() + timedelta(days=1))
    user = store.save(_user(refresh_tokens=[entry]))

    assert store.find_one({"refresh_tokens.token": "rt-1"}).id == user.id
    assert store.find_one({"refresh_tokens.token": "rt-2"}) is None


def test_unknown_operator_rejected(store):
    store.save(_user())
    with pytest.raises(UnsupportedOperator):
        store.find_one({"email": {"$regex": "carol"}})
    with pytest.raises(UnsupportedOperator):
        matches(_user(), {"nickname": "x"})


def test_delete_operations(store):
    first = store.save(_user())
    second = store.save(_user(username="dave001", email="dave@example.com"))

    assert store.delete_one({"email": "carol@example.com"}) is True
    assert store.find_by_id(first.id) is None
    assert store.find_by_id_and_delete(second.id).id == second.id
    assert store.find_by_id_and_delete(second.id) is None


def test_persisted_state_encrypts_two_factor_secrets(tmp_path):
    store = MemoryUserStore(fs_root=str(tmp_path), mfa_encryption_key="k" * 32)
    user = store.save(
        _user(
            two_factor_enabled=True,
            two_factor_secret="JBSWY3DPEHPK3PXP",
            refresh_tokens=[RefreshTokenEntry("rt", utcnow() + timedelta(days=1))],
        )
    )

    raw = json.loads((tmp_path / "state" / "users.json").read_text())
    assert raw["users"][0]["two_factor_secret"] != "JBSWY3DPEHPK3PXP"

    reloaded = MemoryUserStore(fs_root=str(tmp_path), mfa_encryption_key="k" * 32)
    restored = reloaded.find_by_id(user.id)
    assert restored.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert restored.birthdate == date(1985, 3, 4)
    assert restored.refresh_tokens[0].token == "rt"


def test_persistence_requires_key(tmp_path):
    with pytest.raises(RuntimeError):
        MemoryUserStore(fs_root=str(tmp_path))
