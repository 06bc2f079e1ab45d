from __future__ import annotations

import contextlib
import json
from typing import Any, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from movieauth.logging import get_logger
from movieauth.storage.common import (
    UNIQUE_FIELDS,
    account_from_columns,
    account_to_columns,
    conflict_for,
    ensure_aware,
    refresh_tokens_from_json,
    refresh_tokens_to_json,
)
from movieauth.storage.errors import StorageError
from movieauth.storage.models import Role, User

_USER_COLUMNS = (
    "id",
    "username",
    "email",
    "external_id",
    "role",
    "password_hash",
    "auth_provider",
    "is_email_verified",
    "email_verification_token",
    "email_verification_expires_at",
    "failed_login_count",
    "locked_until",
    "refresh_tokens",
    "reset_token",
    "reset_expires_at",
    "last_login_at",
    "last_login_ip",
    "last_login_user_agent",
    "created_at",
    "updated_at",
)


class PostgresStore:
    """Postgres-backed credential store; one row per user in ``app_user``."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_user_table()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate driver failures into storage-layer exceptions."""

        try:
            yield
        except errors.UniqueViolation as exc:
            raise conflict_for(self._conflict_field(exc)) from exc
        except errors.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StorageError(operation, exc) from exc

    @staticmethod
    def _conflict_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        for field in UNIQUE_FIELDS:
            if field in constraint:
                return field
        return "username"

    def _ensure_user_table(self) -> None:
        """Create the ``app_user`` table and token indexes if they are missing."""

        with self._guard("ensure_user_table"), self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT UNIQUE,
                    external_id TEXT UNIQUE,
                    role TEXT NOT NULL DEFAULT 'customer',
                    password_hash TEXT,
                    auth_provider TEXT,
                    is_email_verified BOOLEAN NOT NULL DEFAULT false,
                    email_verification_token TEXT,
                    email_verification_expires_at TIMESTAMPTZ,
                    failed_login_count INTEGER NOT NULL DEFAULT 0,
                    locked_until TIMESTAMPTZ,
                    refresh_tokens JSONB NOT NULL DEFAULT '[]'::jsonb,
                    reset_token TEXT,
                    reset_expires_at TIMESTAMPTZ,
                    last_login_at TIMESTAMPTZ,
                    last_login_ip TEXT,
                    last_login_user_agent TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT app_user_credential_present
                        CHECK (password_hash IS NOT NULL OR auth_provider IS NOT NULL)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_reset_token_idx ON app_user (reset_token)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_verification_token_idx "
                "ON app_user (email_verification_token)"
            )

    @staticmethod
    def _user_params(user: User) -> dict[str, Any]:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "external_id": user.external_id,
            **account_to_columns(user.account),
            "is_email_verified": user.is_email_verified,
            "email_verification_token": user.email_verification_token,
            "email_verification_expires_at": user.email_verification_expires_at,
            "failed_login_count": user.failed_login_count,
            "locked_until": user.locked_until,
            "refresh_tokens": json.dumps(refresh_tokens_to_json(user.refresh_tokens)),
            "reset_token": user.reset_token,
            "reset_expires_at": user.reset_expires_at,
            "last_login_at": user.last_login_at,
            "last_login_ip": user.last_login_ip,
            "last_login_user_agent": user.last_login_user_agent,
            "created_at": user.created_at,
            "updated_at": user.updated_at,
        }

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            account=account_from_columns(
                row.get("role"), row.get("password_hash"), row.get("auth_provider")
            ),
            email=row.get("email"),
            external_id=row.get("external_id"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires_at=ensure_aware(row.get("email_verification_expires_at")),
            failed_login_count=int(row.get("failed_login_count") or 0),
            locked_until=ensure_aware(row.get("locked_until")),
            refresh_tokens=refresh_tokens_from_json(row.get("refresh_tokens")),
            reset_token=row.get("reset_token"),
            reset_expires_at=ensure_aware(row.get("reset_expires_at")),
            last_login_at=ensure_aware(row.get("last_login_at")),
            last_login_ip=row.get("last_login_ip"),
            last_login_user_agent=row.get("last_login_user_agent"),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    def _fetch_one(self, operation: str, where: str, value: Any) -> Optional[User]:
        with self._guard(operation), self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {where} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one("get_user", "id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one("get_user_by_username", "username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one("get_user_by_email", "email", email)

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        return self._fetch_one("get_user_by_external_id", "external_id", external_id)

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        return self._fetch_one("get_user_by_reset_token", "reset_token", token)

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        return self._fetch_one(
            "get_user_by_verification_token", "email_verification_token", token
        )

    def create_user(self, user: User) -> User:
        columns = ", ".join(_USER_COLUMNS)
        placeholders = ", ".join(f"%({name})s" for name in _USER_COLUMNS)
        with self._guard("create_user"), self._connect() as conn:
            row = conn.execute(
                f"INSERT INTO app_user ({columns}) VALUES ({placeholders}) RETURNING *",
                self._user_params(user),
            ).fetchone()
        return self._row_to_user(row)

    def save_user(self, user: User) -> User:
        assignments = ", ".join(
            f"{name} = %({name})s" for name in _USER_COLUMNS if name not in {"id", "created_at", "updated_at"}
        )
        with self._guard("save_user"), self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %(id)s RETURNING *",
                self._user_params(user),
            ).fetchone()
        if not row:
            raise StorageError("save_user", KeyError(user.id))
        saved = self._row_to_user(row)
        user.updated_at = saved.updated_at
        return saved

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._guard("update_user_role"), self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def ping(self) -> bool:
        with self._guard("ping"), self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()
