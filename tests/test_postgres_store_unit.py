import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from psycopg import errors

from movieauth.storage.errors import ConstraintViolation, StorageError
from movieauth.storage.models import (
    ExternalAccount,
    LocalAccount,
    RefreshTokenEntry,
    Role,
    User,
)
from movieauth.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.logger = MagicMock()
    return store


def _row(**overrides) -> dict:
    row = {
        "id": "u-1",
        "username": "henry",
        "email": "henry@example.com",
        "external_id": None,
        "role": "customer",
        "password_hash": "$argon2id$stub",
        "auth_provider": None,
        "is_email_verified": True,
        "email_verification_token": None,
        "email_verification_expires_at": None,
        "failed_login_count": 2,
        # naive timestamps are read as UTC
        "locked_until": datetime(2024, 5, 1, 14, 0),
        "refresh_tokens": [
            {
                "token": "t1",
                "created_at": NOW.isoformat(),
                "expires_at": (NOW + timedelta(days=7)).isoformat(),
            }
        ],
        "reset_token": None,
        "reset_expires_at": None,
        "last_login_at": NOW,
        "last_login_ip": "10.0.0.1",
        "last_login_user_agent": "curl",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestRowMapping:
    def test_local_row(self):
        user = PostgresStore._row_to_user(_row())
        assert isinstance(user.account, LocalAccount)
        assert user.password_hash == "$argon2id$stub"
        assert user.failed_login_count == 2
        assert user.locked_until == datetime(2024, 5, 1, 14, 0, tzinfo=timezone.utc)
        assert user.refresh_tokens == [
            RefreshTokenEntry(token="t1", created_at=NOW, expires_at=NOW + timedelta(days=7))
        ]

    def test_external_row(self):
        user = PostgresStore._row_to_user(
            _row(password_hash=None, auth_provider="google", external_id="g-1", role="admin")
        )
        assert isinstance(user.account, ExternalAccount)
        assert user.account.provider == "google"
        assert user.role is Role.ADMIN

    def test_tokens_as_json_text(self):
        raw = json.dumps(_row()["refresh_tokens"])
        user = PostgresStore._row_to_user(_row(refresh_tokens=raw))
        assert [e.token for e in user.refresh_tokens] == ["t1"]

    def test_row_without_credentials_is_rejected(self):
        with pytest.raises(ValueError):
            PostgresStore._row_to_user(_row(password_hash=None, auth_provider=None))

    def test_params_flatten_account(self):
        user = User.new("ivy", ExternalAccount(role=Role.CUSTOMER, provider="github"), external_id="gh-2")
        user.refresh_tokens.append(
            RefreshTokenEntry(token="abc", created_at=NOW, expires_at=NOW + timedelta(days=7))
        )
        params = PostgresStore._user_params(user)
        assert params["password_hash"] is None
        assert params["auth_provider"] == "github"
        assert params["role"] == "customer"
        assert json.loads(params["refresh_tokens"])[0]["token"] == "abc"


class TestErrorTranslation:
    def test_conflict_field_from_constraint_name(self):
        exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_email_key"))
        assert PostgresStore._conflict_field(exc) == "email"

    def test_conflict_field_defaults_to_username(self):
        assert PostgresStore._conflict_field(SimpleNamespace(diag=None)) == "username"

    def test_unique_violation_becomes_constraint_violation(self):
        store = _store()
        with pytest.raises(ConstraintViolation) as excinfo:
            with store._guard("create_user"):
                raise errors.UniqueViolation("duplicate key")
        assert excinfo.value.field == "username"

    def test_driver_error_becomes_storage_error(self):
        store = _store()
        with pytest.raises(StorageError) as excinfo:
            with store._guard("get_user"):
                raise errors.OperationalError("server closed the connection")
        assert excinfo.value.operation == "get_user"
        assert store.logger.error.call_args[0][0] == "postgres_operation_failed"

    def test_ping_goes_through_pool(self):
        store = _store()
        with pytest.raises(AssertionError):
            store.ping()
