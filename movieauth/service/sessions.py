from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from movieauth.config import Settings
from movieauth.storage.models import RefreshTokenEntry, User, utcnow


class SessionManager:
    """Owns the bounded per-user refresh token list.

    Entries are kept oldest-first; overflow evicts from the front regardless of
    expiry. Like the account guard, it edits the record in place and leaves
    saving to the caller.
    """

    def __init__(self, settings: Settings) -> None:
        self.max_tokens = settings.max_refresh_tokens
        self.ttl = timedelta(days=settings.refresh_token_ttl_days)

    def add_token(self, user: User, token: str, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        user.refresh_tokens.append(
            RefreshTokenEntry(token=token, created_at=now, expires_at=now + self.ttl)
        )
        overflow = len(user.refresh_tokens) - self.max_tokens
        if overflow > 0:
            del user.refresh_tokens[:overflow]

    def remove_token(self, user: User, token: str) -> bool:
        before = len(user.refresh_tokens)
        user.refresh_tokens = [e for e in user.refresh_tokens if e.token != token]
        return len(user.refresh_tokens) != before

    def revoke_all(self, user: User) -> int:
        count = len(user.refresh_tokens)
        user.refresh_tokens = []
        return count

    def prune_expired(self, user: User, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        before = len(user.refresh_tokens)
        user.refresh_tokens = [e for e in user.refresh_tokens if e.expires_at > now]
        return before - len(user.refresh_tokens)

    def contains(self, user: User, token: str) -> bool:
        return any(e.token == token for e in user.refresh_tokens)

    def active_count(self, user: User, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return sum(1 for e in user.refresh_tokens if e.expires_at > now)
