"""Tests for progressive lockout after failed logins."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from movieauth.config import Settings
from movieauth.service.guard import AccountGuard
from movieauth.storage.models import LocalAccount, Role, User

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def guard():
    return AccountGuard(Settings(jwt_secret="x" * 40, max_failed_logins=5, lockout_minutes=120))


@pytest.fixture
def user():
    return User.new("carol", LocalAccount(role=Role.CUSTOMER, password_hash="h"))


class TestFailedAttempts:
    def test_counts_up_to_threshold_then_locks(self, guard, user):
        for expected in range(1, 5):
            guard.record_failed_attempt(user, NOW)
            assert user.failed_login_count == expected
            assert not guard.is_locked(user, NOW)
        guard.record_failed_attempt(user, NOW)
        assert user.failed_login_count == 5
        assert user.locked_until == NOW + timedelta(minutes=120)
        assert guard.is_locked(user, NOW)

    def test_remaining_attempts(self, guard, user):
        assert guard.remaining_attempts(user) == 5
        guard.record_failed_attempt(user, NOW)
        guard.record_failed_attempt(user, NOW)
        assert guard.remaining_attempts(user) == 3

    def test_failure_while_locked_does_not_extend_lock(self, guard, user):
        for _ in range(5):
            guard.record_failed_attempt(user, NOW)
        locked_until = user.locked_until
        guard.record_failed_attempt(user, NOW + timedelta(minutes=10))
        assert user.locked_until == locked_until
        assert user.failed_login_count == 6
        assert guard.remaining_attempts(user) == 0

    def test_stale_lock_restarts_count(self, guard, user):
        for _ in range(5):
            guard.record_failed_attempt(user, NOW)
        later = NOW + timedelta(minutes=121)
        assert not guard.is_locked(user, later)
        guard.record_failed_attempt(user, later)
        assert user.failed_login_count == 1
        assert user.locked_until is None

    def test_lock_is_logged(self, guard, user):
        with patch("movieauth.service.guard.logger") as mock_logger:
            for _ in range(5):
                guard.record_failed_attempt(user, NOW)
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "account_locked"
        assert mock_logger.warning.call_args[1]["user_id"] == user.id


class TestLockState:
    def test_lock_expires_exactly_at_locked_until(self, guard, user):
        user.locked_until = NOW
        assert not guard.is_locked(user, NOW)
        assert guard.is_locked(user, NOW - timedelta(seconds=1))

    def test_minutes_remaining_rounds_up(self, guard, user):
        user.locked_until = NOW + timedelta(minutes=30, seconds=1)
        assert guard.minutes_remaining(user, NOW) == 31
        user.locked_until = NOW + timedelta(minutes=30)
        assert guard.minutes_remaining(user, NOW) == 30

    def test_minutes_remaining_when_unlocked(self, guard, user):
        assert guard.minutes_remaining(user, NOW) == 0
        user.locked_until = NOW - timedelta(minutes=1)
        assert guard.minutes_remaining(user, NOW) == 0


class TestSuccess:
    def test_success_clears_state(self, guard, user):
        guard.record_failed_attempt(user, NOW)
        guard.record_failed_attempt(user, NOW)
        assert guard.record_success(user) is True
        assert user.failed_login_count == 0
        assert user.locked_until is None

    def test_success_without_failures_is_noop(self, guard, user):
        assert guard.record_success(user) is False

    def test_clear_drops_active_lock(self, guard, user):
        for _ in range(5):
            guard.record_failed_attempt(user, NOW)
        guard.clear(user)
        assert not guard.is_locked(user, NOW)
        assert user.failed_login_count == 0
