from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass(frozen=True)
class LocalAccount:
    """Account authenticated with a locally stored password hash."""

    role: Role
    password_hash: str
    kind: str = field(default="local", init=False)


@dataclass(frozen=True)
class ExternalAccount:
    """Account authenticated by a federated identity provider; no local password."""

    role: Role
    provider: str
    kind: str = field(default="external", init=False)


Account = Union[LocalAccount, ExternalAccount]


@dataclass
class RefreshTokenEntry:
    token: str
    created_at: datetime
    expires_at: datetime


@dataclass
class User:
    id: str
    username: str
    account: Account
    email: Optional[str] = None
    external_id: Optional[str] = None
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenEntry] = field(default_factory=list)
    reset_token: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    last_login_user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        account: Account,
        *,
        email: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            account=account,
            email=email,
            external_id=external_id,
            created_at=now,
            updated_at=now,
        )

    @property
    def role(self) -> Role:
        return self.account.role

    @property
    def password_hash(self) -> Optional[str]:
        if isinstance(self.account, LocalAccount):
            return self.account.password_hash
        return None

    @property
    def is_external_auth_user(self) -> bool:
        return isinstance(self.account, ExternalAccount)

    def set_password_hash(self, password_hash: str) -> None:
        """Replace the credential; an external account becomes local with the same role."""
        self.account = LocalAccount(role=self.account.role, password_hash=password_hash)

    def with_role(self, role: Role) -> None:
        if isinstance(self.account, LocalAccount):
            self.account = LocalAccount(role=role, password_hash=self.account.password_hash)
        else:
            self.account = ExternalAccount(role=role, provider=self.account.provider)
