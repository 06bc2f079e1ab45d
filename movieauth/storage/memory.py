from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from movieauth.logging import get_logger
from movieauth.storage.common import (
    account_from_columns,
    account_to_columns,
    conflict_for,
    find_unique_conflict,
    format_datetime,
    parse_datetime,
    refresh_tokens_from_json,
    refresh_tokens_to_json,
)
from movieauth.storage.errors import StorageError
from movieauth.storage.models import Role, User, utcnow


class MemoryStore:
    """In-process credential store for tests and single-instance development.

    Records are deep-copied on the way in and out, so a caller only ever
    observes changes that went through ``save_user``. When ``state_path`` is
    given the whole store is snapshotted to JSON after every write.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so persistence can run while a write already holds the lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- lookups ---------------------------------------------------------------

    def _find(self, predicate: Callable[[User], bool]) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if predicate(user):
                    return copy.deepcopy(user)
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._find(lambda u: u.username == username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find(lambda u: u.email is not None and u.email == email)

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        return self._find(lambda u: u.external_id is not None and u.external_id == external_id)

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        return self._find(lambda u: u.reset_token is not None and u.reset_token == token)

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        return self._find(
            lambda u: u.email_verification_token is not None
            and u.email_verification_token == token
        )

    # -- writes ----------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise conflict_for("id")
            conflict = find_unique_conflict(self.users.values(), user)
            if conflict:
                raise conflict_for(conflict)
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise StorageError("save_user", KeyError(user.id))
            conflict = find_unique_conflict(self.users.values(), user)
            if conflict:
                raise conflict_for(conflict)
            user.updated_at = utcnow()
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.with_role(Role(role))
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def ping(self) -> bool:
        return True

    # -- persistence -----------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return format_datetime(dt)

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return parse_datetime(raw)

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "external_id": user.external_id,
            **account_to_columns(user.account),
            "is_email_verified": user.is_email_verified,
            "email_verification_token": user.email_verification_token,
            "email_verification_expires_at": self._serialize_datetime(
                user.email_verification_expires_at
            ),
            "failed_login_count": user.failed_login_count,
            "locked_until": self._serialize_datetime(user.locked_until),
            "refresh_tokens": refresh_tokens_to_json(user.refresh_tokens),
            "reset_token": user.reset_token,
            "reset_expires_at": self._serialize_datetime(user.reset_expires_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "last_login_user_agent": user.last_login_user_agent,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            account=account_from_columns(
                data.get("role"), data.get("password_hash"), data.get("auth_provider")
            ),
            email=data.get("email"),
            external_id=data.get("external_id"),
            is_email_verified=bool(data.get("is_email_verified", False)),
            email_verification_token=data.get("email_verification_token"),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            failed_login_count=int(data.get("failed_login_count", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            refresh_tokens=refresh_tokens_from_json(data.get("refresh_tokens")),
            reset_token=data.get("reset_token"),
            reset_expires_at=self._deserialize_datetime(data.get("reset_expires_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            last_login_user_agent=data.get("last_login_user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.state_path.parent), prefix=".memory_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError("persist_state", exc) from exc

    def _load_state(self) -> bool:
        # read directly instead of exists() to avoid a check-then-read race
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(self.state_path))
        return True
