"""Common storage utilities shared between memory and postgres implementations.

Both backends flatten the account variant into ``role``/``password_hash``/
``auth_provider`` columns and keep refresh tokens as a JSON list, so the
conversions live here to keep the two stores byte-compatible.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from movieauth.storage.errors import ConstraintViolation
from movieauth.storage.models import (
    Account,
    ExternalAccount,
    LocalAccount,
    RefreshTokenEntry,
    Role,
    User,
)

UNIQUE_FIELDS = ("username", "email", "external_id")

_CONFLICT_MESSAGES = {
    "username": "Username is already taken",
    "email": "Email is already registered",
    "external_id": "External identity is already linked",
}


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_aware(raw)
    return ensure_aware(datetime.fromisoformat(str(raw)))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def account_to_columns(account: Account) -> Dict[str, Any]:
    if isinstance(account, LocalAccount):
        return {
            "role": account.role.value,
            "password_hash": account.password_hash,
            "auth_provider": None,
        }
    return {
        "role": account.role.value,
        "password_hash": None,
        "auth_provider": account.provider,
    }


def account_from_columns(
    role: Optional[str], password_hash: Optional[str], auth_provider: Optional[str]
) -> Account:
    parsed_role = Role(role or Role.CUSTOMER.value)
    if password_hash:
        return LocalAccount(role=parsed_role, password_hash=password_hash)
    if auth_provider:
        return ExternalAccount(role=parsed_role, provider=auth_provider)
    raise ValueError("user record has neither a password hash nor an external provider")


def refresh_tokens_to_json(entries: Iterable[RefreshTokenEntry]) -> List[Dict[str, str]]:
    return [
        {
            "token": entry.token,
            "created_at": entry.created_at.isoformat(),
            "expires_at": entry.expires_at.isoformat(),
        }
        for entry in entries
    ]


def refresh_tokens_from_json(raw: Any) -> List[RefreshTokenEntry]:
    if not raw:
        return []
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    return [
        RefreshTokenEntry(
            token=item["token"],
            created_at=parse_datetime(item["created_at"]),
            expires_at=parse_datetime(item["expires_at"]),
        )
        for item in raw
    ]


def conflict_for(field: str) -> ConstraintViolation:
    return ConstraintViolation(
        _CONFLICT_MESSAGES.get(field, f"{field} already exists"), {"field": field}
    )


def find_unique_conflict(existing: Iterable[User], candidate: User) -> Optional[str]:
    """Return the first unique field ``candidate`` shares with another record."""

    for other in existing:
        if other.id == candidate.id:
            continue
        for field in UNIQUE_FIELDS:
            value = getattr(candidate, field)
            if value is not None and value == getattr(other, field):
                return field
    return None


__all__ = [
    "UNIQUE_FIELDS",
    "account_from_columns",
    "account_to_columns",
    "conflict_for",
    "ensure_aware",
    "find_unique_conflict",
    "format_datetime",
    "parse_datetime",
    "refresh_tokens_from_json",
    "refresh_tokens_to_json",
]
