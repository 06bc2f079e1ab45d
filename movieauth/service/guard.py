from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from movieauth.config import Settings
from movieauth.logging import get_logger
from movieauth.storage.models import User, utcnow

logger = get_logger(__name__)


class AccountGuard:
    """Progressive lockout after repeated failed logins.

    The guard only mutates the ``User`` it is handed; persisting the change is
    the caller's job.
    """

    def __init__(self, settings: Settings) -> None:
        self.max_failed_logins = settings.max_failed_logins
        self.lockout = timedelta(minutes=settings.lockout_minutes)

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return user.locked_until is not None and user.locked_until > now

    def record_failed_attempt(self, user: User, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        if user.locked_until is not None and user.locked_until <= now:
            # lock has lapsed: this failure starts a fresh count
            user.failed_login_count = 1
            user.locked_until = None
            return
        user.failed_login_count += 1
        if user.failed_login_count >= self.max_failed_logins and not self.is_locked(user, now):
            user.locked_until = now + self.lockout
            logger.warning(
                "account_locked",
                user_id=user.id,
                failed_login_count=user.failed_login_count,
                locked_until=user.locked_until.isoformat(),
            )

    def record_success(self, user: User) -> bool:
        """Clear lockout state; returns False when there was nothing to clear."""
        if user.failed_login_count <= 0:
            return False
        user.failed_login_count = 0
        user.locked_until = None
        return True

    def remaining_attempts(self, user: User) -> int:
        return max(0, self.max_failed_logins - user.failed_login_count)

    def minutes_remaining(self, user: User, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        if user.locked_until is None or user.locked_until <= now:
            return 0
        return math.ceil((user.locked_until - now).total_seconds() / 60)

    def clear(self, user: User) -> None:
        user.failed_login_count = 0
        user.locked_until = None
