"""Document-style query and update helpers shared by user store backends.

Filters and patches use the small Mongo-flavoured vocabulary the
authentication core relies on: equality, ``$gt``/``$lt``/``$ne``, ``$or`` and
dotted paths into list fields for filters; ``$set``, ``$unset``, ``$inc``,
``$push`` (with ``$each``/``$slice``) and ``$pull`` for patches.
"""

from __future__ import annotations

from dataclasses import MISSING, fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from accountia_auth.storage.errors import UnsupportedOperator
from accountia_auth.storage.models import (
    MAX_REFRESH_TOKENS,
    RefreshTokenEntry,
    User,
)

Filter = Mapping[str, Any]
Patch = Mapping[str, Mapping[str, Any]]

_COMPARISON_OPERATORS = {"$gt", "$lt", "$gte", "$lte", "$ne", "$in"}
_USER_FIELDS = {f.name: f for f in fields(User)}


class UserStore(Protocol):
    """Persistence contract consumed by the authentication services."""

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_one(self, filter: Filter) -> Optional[User]: ...

    def save(self, user: User) -> User: ...

    def update_one(self, filter: Filter, patch: Patch) -> bool: ...

    def delete_one(self, filter: Filter) -> bool: ...

    def find_by_id_and_delete(self, user_id: str) -> Optional[User]: ...

    def find_by_id_and_update(self, user_id: str, patch: Patch) -> Optional[User]: ...


# ============================================================================
# FILTERS
# ============================================================================


def _compare(value: Any, operator: str, operand: Any) -> bool:
    if operator == "$ne":
        return value != operand
    if operator == "$in":
        return value in operand
    if value is None or operand is None:
        return False
    if operator == "$gt":
        return value > operand
    if operator == "$lt":
        return value < operand
    if operator == "$gte":
        return value >= operand
    if operator == "$lte":
        return value <= operand
    raise UnsupportedOperator(operator)


def _match_value(value: Any, condition: Any) -> bool:
    if isinstance(condition, Mapping) and condition and all(
        str(key).startswith("$") for key in condition
    ):
        for operator, operand in condition.items():
            if operator not in _COMPARISON_OPERATORS:
                raise UnsupportedOperator(operator)
            if not _compare(value, operator, operand):
                return False
        return True
    return value == condition


def _resolve(document: Any, key: str) -> Any:
    if isinstance(document, Mapping):
        return document.get(key)
    if is_dataclass(document):
        if not hasattr(document, key):
            raise UnsupportedOperator(f"unknown field {key!r}")
        return getattr(document, key)
    raise UnsupportedOperator(f"cannot resolve {key!r}")


def matches(document: Any, filter: Filter) -> bool:
    """Return True when ``document`` satisfies every clause of ``filter``.

    A dotted key such as ``refresh_tokens.token`` matches when any element
    of the list field satisfies the condition.
    """
    for key, condition in filter.items():
        if key == "$or":
            if not any(matches(document, clause) for clause in condition):
                return False
            continue
        if key.startswith("$"):
            raise UnsupportedOperator(key)
        if "." in key:
            head, tail = key.split(".", 1)
            items = _resolve(document, head) or []
            if not any(matches(item, {tail: condition}) for item in items):
                return False
            continue
        if not _match_value(_resolve(document, key), condition):
            return False
    return True


# ============================================================================
# PATCHES
# ============================================================================


def _field_default(name: str) -> Any:
    field_def = _USER_FIELDS[name]
    if field_def.default is not MISSING:
        return field_def.default
    if field_def.default_factory is not MISSING:  # type: ignore[misc]
        return field_def.default_factory()  # type: ignore[misc]
    return None


def _require_field(name: str) -> None:
    if name not in _USER_FIELDS:
        raise UnsupportedOperator(f"unknown field {name!r}")


def _coerce_list_item(name: str, item: Any) -> Any:
    if name == "refresh_tokens" and isinstance(item, Mapping):
        return RefreshTokenEntry(token=item["token"], expires_at=item["expires_at"])
    return item


def _apply_push(user: User, name: str, value: Any) -> None:
    current: List[Any] = list(getattr(user, name) or [])
    if isinstance(value, Mapping) and "$each" in value:
        current.extend(_coerce_list_item(name, item) for item in value["$each"])
        limit = value.get("$slice")
        if limit is not None:
            current = current[limit:] if limit < 0 else current[:limit]
    else:
        current.append(_coerce_list_item(name, value))
    setattr(user, name, current)


def _apply_pull(user: User, name: str, condition: Any) -> None:
    current: List[Any] = list(getattr(user, name) or [])
    if isinstance(condition, Mapping):
        kept = [item for item in current if not matches(item, condition)]
    else:
        kept = [item for item in current if item != condition]
    setattr(user, name, kept)


def apply_patch(user: User, patch: Patch, *, now: datetime) -> User:
    """Apply ``patch`` to ``user`` in place and stamp ``updated_at``."""
    for operator, body in patch.items():
        for name, value in body.items():
            _require_field(name)
            if operator == "$set":
                setattr(user, name, value)
            elif operator == "$unset":
                setattr(user, name, _field_default(name))
            elif operator == "$inc":
                setattr(user, name, (getattr(user, name) or 0) + value)
            elif operator == "$push":
                _apply_push(user, name, value)
            elif operator == "$pull":
                _apply_pull(user, name, value)
            else:
                raise UnsupportedOperator(operator)
    enforce_refresh_cap(user)
    user.updated_at = now
    return user


def enforce_refresh_cap(user: User) -> None:
    if len(user.refresh_tokens) > MAX_REFRESH_TOKENS:
        user.refresh_tokens = user.refresh_tokens[-MAX_REFRESH_TOKENS:]


def unique_field_conflict(
    candidate: User, others: Dict[str, User]
) -> Optional[str]:
    """Return the name of the unique field ``candidate`` would duplicate."""
    for other in others.values():
        if other.id == candidate.id:
            continue
        if other.email == candidate.email:
            return "email"
        if other.username == candidate.username:
            return "username"
    return None


__all__ = [
    "Filter",
    "Patch",
    "UserStore",
    "apply_patch",
    "enforce_refresh_cap",
    "matches",
    "unique_field_conflict",
]
