from __future__ import annotations

import asyncio
import contextlib
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, Protocol, TypeVar

from movieauth.config import Settings
from movieauth.logging import get_logger, sanitize_error_message
from movieauth.service.email import EmailService
from movieauth.service.errors import (
    AccountLockedError,
    ConflictError,
    InternalError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    MissingTokenError,
    NotFoundError,
    TokenExpiredError,
    ValidationError,
    WeakPasswordError,
)
from movieauth.service.events import EventPublisher
from movieauth.service.guard import AccountGuard
from movieauth.service.result import Err
from movieauth.service.sessions import SessionManager
from movieauth.service.tokens import TokenError, TokenKind, TokenPair, TokenService
from movieauth.storage.errors import ConstraintViolation, StorageError
from movieauth.storage.models import (
    Account,
    ExternalAccount,
    LocalAccount,
    Role,
    User,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

RESET_REQUESTED_MESSAGE = "If the email exists, a password reset link has been sent"


class CredentialStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def save_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_external_id(self, external_id: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


@dataclass
class RefreshResult:
    user: User
    access_token: str
    expires_in: int


@dataclass
class SecurityInfo:
    last_login_at: Optional[datetime]
    last_login_ip: Optional[str]
    failed_login_count: int
    is_locked: bool
    locked_until: Optional[datetime]
    is_email_verified: bool
    active_sessions: int
    registered_at: datetime
    updated_at: datetime


@dataclass
class TokenValidation:
    valid: bool
    user: Optional[User] = None
    error: Optional[str] = None


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


class AuthService:
    """Sequences the store, token service, guard and session manager per flow.

    Every flow loads a fresh copy of the user, mutates it in memory and writes
    it back once. Store calls and password hashing run in worker threads so
    the event loop never blocks on them.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        guard: AccountGuard,
        sessions: SessionManager,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        events: Optional[EventPublisher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.guard = guard
        self.sessions = sessions
        self.settings = settings
        self.email = email or EmailService()
        self.events = events or EventPublisher()
        self.logger = logger

    # -- plumbing ---------------------------------------------------------------

    @contextlib.contextmanager
    def _storage_boundary(self, operation: str) -> Iterator[None]:
        """Map store failures to service errors without leaking driver detail."""

        try:
            yield
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=dict(exc.detail)) from exc
        except StorageError as exc:
            self.logger.error(
                "storage_failure",
                operation=operation,
                error_type=type(exc.cause).__name__ if exc.cause else None,
                error=str(exc),
            )
            detail = {}
            if self.settings.dev_mode:
                detail["error"] = sanitize_error_message(str(exc))
            raise InternalError("An internal error occurred", detail=detail) from exc

    async def _store_call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        with self._storage_boundary(operation):
            return await asyncio.to_thread(func, *args)

    async def _save(self, user: User) -> User:
        return await self._store_call("save_user", self.store.save_user, user)

    async def _require_user(self, user_id: str) -> User:
        user = await self._store_call("get_user", self.store.get_user, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _check_strength(self, password: str) -> None:
        check = self.tokens.validate_password_strength(password)
        if not check.valid:
            raise WeakPasswordError(check.violations)

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.tokens.hash_password, password)

    async def _verify(self, password: str, password_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.tokens.verify_password, password, password_hash)

    async def _dispatch_email(self, kind: str, user: User, func: Callable[..., bool], *args: Any) -> bool:
        """Send mail off the event loop, giving up after the configured timeout."""

        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.settings.email_dispatch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.warning(
                "email_dispatch_timeout",
                kind=kind,
                user_id=user.id,
                timeout_seconds=self.settings.email_dispatch_timeout_seconds,
            )
            return False
        if not sent:
            self.logger.warning("email_dispatch_fallback", kind=kind, user_id=user.id)
        return bool(sent)

    def _issue_verification_token(self, user: User, now: datetime) -> str:
        token = self.tokens.generate_opaque_token()
        user.email_verification_token = token
        user.email_verification_expires_at = now + timedelta(
            hours=self.settings.email_verification_ttl_hours
        )
        user.is_email_verified = False
        return token

    def _start_session(self, user: User, client: ClientInfo, now: datetime) -> TokenPair:
        pair = self.tokens.issue_token_pair(user)
        self.sessions.add_token(user, pair.refresh_token, now)
        user.last_login_at = now
        user.last_login_ip = client.ip_address
        user.last_login_user_agent = client.user_agent
        return pair

    # -- register / login --------------------------------------------------------

    async def register(
        self, username: str, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> AuthResult:
        client = client or ClientInfo()
        if await self._store_call("get_user_by_username", self.store.get_user_by_username, username):
            raise ConflictError("Username is already taken", detail={"field": "username"})
        if await self._store_call("get_user_by_email", self.store.get_user_by_email, email):
            raise ConflictError("Email is already registered", detail={"field": "email"})
        self._check_strength(password)

        password_hash = await self._hash(password)
        now = utcnow()
        user = User.new(
            username, LocalAccount(role=Role.CUSTOMER, password_hash=password_hash), email=email
        )
        verification_token = self._issue_verification_token(user, now)
        pair = self._start_session(user, client, now)
        user = await self._store_call("create_user", self.store.create_user, user)

        self.logger.info("user_registered", user_id=user.id, username=user.username)
        await self._dispatch_email(
            "email_verification",
            user,
            self.email.send_email_verification,
            email,
            user.username,
            verification_token,
        )
        await self.events.user_registered(user)
        return AuthResult(user=user, tokens=pair)

    async def login(
        self, username: str, password: str, client: Optional[ClientInfo] = None
    ) -> AuthResult:
        client = client or ClientInfo()
        user = await self._store_call(
            "get_user_by_username", self.store.get_user_by_username, username
        )
        if user is None:
            await asyncio.to_thread(self.tokens.burn_verification, password)
            self.logger.warning("login_unknown_user", ip=client.ip_address)
            # same count a fresh account reports after its first miss
            raise InvalidCredentialsError(max(0, self.guard.max_failed_logins - 1))

        now = utcnow()
        if self.guard.is_locked(user, now):
            minutes = self.guard.minutes_remaining(user, now)
            self.logger.warning("login_rejected_locked", user_id=user.id, minutes_remaining=minutes)
            raise AccountLockedError(minutes)

        if not await self._verify(password, user.password_hash):
            self.guard.record_failed_attempt(user, now)
            await self._save(user)
            if self.guard.is_locked(user, now):
                raise AccountLockedError(self.guard.minutes_remaining(user, now))
            remaining = self.guard.remaining_attempts(user)
            self.logger.warning(
                "login_failed",
                user_id=user.id,
                failed_login_count=user.failed_login_count,
                remaining_attempts=remaining,
            )
            raise InvalidCredentialsError(remaining)

        self.guard.record_success(user)
        pair = self._start_session(user, client, now)
        user = await self._save(user)
        self.logger.info("login_succeeded", user_id=user.id, ip=client.ip_address)
        await self.events.user_logged_in(user, ip=client.ip_address, user_agent=client.user_agent)
        return AuthResult(user=user, tokens=pair)

    # -- tokens -----------------------------------------------------------------

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        if not refresh_token:
            raise MissingTokenError("Refresh token required")
        result = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        if isinstance(result, Err):
            self.logger.warning("refresh_token_rejected", reason=result.error.value)
            raise InvalidRefreshTokenError("Invalid refresh token")
        claims = result.value
        user = await self._store_call("get_user", self.store.get_user, claims.user_id)
        if user is None or not self.sessions.contains(user, refresh_token):
            self.logger.warning("refresh_token_not_live", user_id=claims.user_id)
            raise InvalidRefreshTokenError("Invalid refresh token")
        if self.sessions.prune_expired(user):
            user = await self._save(user)
        return RefreshResult(
            user=user,
            access_token=self.tokens.issue_access_token(user),
            expires_in=self.tokens.access_ttl_seconds,
        )

    async def authenticate(self, access_token: Optional[str]) -> User:
        """Resolve a bearer access token to its (unlocked) user."""

        if not access_token:
            raise MissingTokenError("Access token required")
        result = self.tokens.verify(access_token, TokenKind.ACCESS)
        if isinstance(result, Err):
            if result.error is TokenError.EXPIRED:
                raise TokenExpiredError("Token expired")
            raise InvalidTokenError("Invalid token")
        user = await self._store_call("get_user", self.store.get_user, result.value.user_id)
        if user is None:
            raise InvalidTokenError("Invalid token")
        now = utcnow()
        if self.guard.is_locked(user, now):
            raise AccountLockedError(self.guard.minutes_remaining(user, now))
        return user

    async def validate_token_for_service(self, access_token: str) -> TokenValidation:
        result = self.tokens.verify(access_token, TokenKind.ACCESS)
        if isinstance(result, Err):
            return TokenValidation(valid=False, error=result.error.value)
        user = await self._store_call("get_user", self.store.get_user, result.value.user_id)
        if user is None:
            return TokenValidation(valid=False, error="user_not_found")
        if self.guard.is_locked(user):
            return TokenValidation(valid=False, error="account_locked")
        return TokenValidation(valid=True, user=user)

    # -- logout -----------------------------------------------------------------

    async def logout(self, user_id: str, refresh_token: Optional[str] = None) -> bool:
        if not refresh_token:
            return False
        user = await self._require_user(user_id)
        removed = self.sessions.remove_token(user, refresh_token)
        if removed:
            await self._save(user)
        self.logger.info("logout", user_id=user_id, removed=removed)
        return removed

    async def logout_all(self, user_id: str) -> int:
        user = await self._require_user(user_id)
        revoked = self.sessions.revoke_all(user)
        if revoked:
            await self._save(user)
        self.logger.info("logout_all", user_id=user_id, revoked=revoked)
        return revoked

    # -- passwords --------------------------------------------------------------

    async def request_password_reset(self, email: str) -> str:
        user = await self._store_call("get_user_by_email", self.store.get_user_by_email, email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            return RESET_REQUESTED_MESSAGE
        token = self.tokens.generate_opaque_token()
        user.reset_token = token
        user.reset_expires_at = utcnow() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        user = await self._save(user)
        self.logger.info("password_reset_requested", user_id=user.id)
        await self._dispatch_email(
            "password_reset", user, self.email.send_password_reset, email, user.username, token
        )
        await self.events.password_reset_requested(user)
        return RESET_REQUESTED_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> User:
        self._check_strength(new_password)
        user = await self._store_call(
            "get_user_by_reset_token", self.store.get_user_by_reset_token, token
        )
        now = utcnow()
        if user is None or user.reset_expires_at is None or user.reset_expires_at <= now:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError("Password reset token is invalid or has expired")
        user.set_password_hash(await self._hash(new_password))
        user.reset_token = None
        user.reset_expires_at = None
        self.guard.clear(user)
        self.sessions.revoke_all(user)
        user = await self._save(user)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> User:
        user = await self._require_user(user_id)
        if not await self._verify(current_password, user.password_hash):
            self.logger.warning("change_password_wrong_current", user_id=user.id)
            raise InvalidCurrentPasswordError("Current password is incorrect")
        self._check_strength(new_password)
        user.set_password_hash(await self._hash(new_password))
        self.sessions.revoke_all(user)
        user = await self._save(user)
        self.logger.info("password_changed", user_id=user.id)
        return user

    # -- account ----------------------------------------------------------------

    async def get_user(self, user_id: str) -> User:
        return await self._require_user(user_id)

    async def security_info(self, user_id: str) -> SecurityInfo:
        user = await self._require_user(user_id)
        now = utcnow()
        return SecurityInfo(
            last_login_at=user.last_login_at,
            last_login_ip=user.last_login_ip,
            failed_login_count=user.failed_login_count,
            is_locked=self.guard.is_locked(user, now),
            locked_until=user.locked_until,
            is_email_verified=user.is_email_verified,
            active_sessions=self.sessions.active_count(user, now),
            registered_at=user.created_at,
            updated_at=user.updated_at,
        )

    async def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        user = await self._require_user(user_id)
        new_username = username if username and username != user.username else None
        new_email = email if email and email != user.email else None
        if new_username is None and new_email is None:
            raise ValidationError("Please provide fields to update")

        if new_username is not None:
            if await self._store_call(
                "get_user_by_username", self.store.get_user_by_username, new_username
            ):
                raise ConflictError("Username is already taken", detail={"field": "username"})
            user.username = new_username
        verification_token: Optional[str] = None
        if new_email is not None:
            if await self._store_call("get_user_by_email", self.store.get_user_by_email, new_email):
                raise ConflictError("Email is already taken", detail={"field": "email"})
            user.email = new_email
            verification_token = self._issue_verification_token(user, utcnow())

        user = await self._save(user)
        self.logger.info(
            "profile_updated",
            user_id=user.id,
            username_changed=new_username is not None,
            email_changed=new_email is not None,
        )
        if verification_token is not None:
            await self._dispatch_email(
                "email_verification",
                user,
                self.email.send_email_verification,
                user.email,
                user.username,
                verification_token,
            )
        return user

    async def verify_email(self, token: str) -> User:
        user = await self._store_call(
            "get_user_by_verification_token", self.store.get_user_by_verification_token, token
        )
        now = utcnow()
        if (
            user is None
            or user.email_verification_expires_at is None
            or user.email_verification_expires_at <= now
        ):
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError("Email verification token is invalid or has expired")
        user.is_email_verified = True
        user.email_verification_token = None
        user.email_verification_expires_at = None
        user = await self._save(user)
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, user_id: str) -> User:
        user = await self._require_user(user_id)
        if not user.email:
            raise ValidationError("No email address on file")
        if user.is_email_verified:
            raise ValidationError("Email is already verified")
        token = self._issue_verification_token(user, utcnow())
        user = await self._save(user)
        await self._dispatch_email(
            "email_verification", user, self.email.send_email_verification, user.email, user.username, token
        )
        return user

    # -- federated identities ---------------------------------------------------

    async def login_external(
        self,
        external_id: str,
        provider: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        """Find or create the account linked to an external identity and open a session."""

        client = client or ClientInfo()
        now = utcnow()
        user = await self._store_call(
            "get_user_by_external_id", self.store.get_user_by_external_id, external_id
        )
        if user is None:
            if email and await self._store_call(
                "get_user_by_email", self.store.get_user_by_email, email
            ):
                raise ConflictError("Email is already registered", detail={"field": "email"})
            account: Account = ExternalAccount(role=Role.CUSTOMER, provider=provider)
            username = username or f"{provider}_user_{external_id}"
            user = User.new(username, account, email=email, external_id=external_id)
            # provider-asserted addresses count as verified
            user.is_email_verified = bool(email)
            pair = self._start_session(user, client, now)
            user = await self._store_call("create_user", self.store.create_user, user)
            self.logger.info("external_user_created", user_id=user.id, provider=provider)
            await self.events.user_registered(user)
        else:
            if self.guard.is_locked(user, now):
                raise AccountLockedError(self.guard.minutes_remaining(user, now))
            self.guard.record_success(user)
            pair = self._start_session(user, client, now)
            user = await self._save(user)
        await self.events.user_logged_in(user, ip=client.ip_address, user_agent=client.user_agent)
        return AuthResult(user=user, tokens=pair)
