from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from movieauth.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    ProfileUpdateRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SecurityInfoResponse,
    UserResponse,
    VerifyEmailRequest,
)
from movieauth.logging import get_logger
from movieauth.service.auth import AuthResult, ClientInfo
from movieauth.service.errors import MissingTokenError
from movieauth.service.rate_limit import RateLimitDecision
from movieauth.service.runtime import Runtime, get_runtime
from movieauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.retry_after)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def rate_limit(policy: str) -> Callable:
    """Build a dependency that enforces ``policy`` for the caller's address."""

    async def _enforce(
        request: Request,
        response: Response,
        runtime: Runtime = Depends(get_runtime),
    ) -> RateLimitInfo:
        decision = await runtime.rate_limiter.enforce(policy, _client_ip(request))
        info = RateLimitInfo.from_decision(decision)
        info.apply_headers(response)
        return info

    return _enforce


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise MissingTokenError("Access token required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise MissingTokenError("Access token required")
    return token.strip()


async def get_current_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> User:
    return await runtime.auth.authenticate(_bearer_token(authorization))


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
    )


@router.post(
    "/register",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(rate_limit("register"))],
)
async def register(
    body: RegisterRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Create a customer account and open its first session.

    Raises:
        400: invalid input or weak password
        409: username or email already in use
        429: register rate limit exceeded
    """
    result = await runtime.auth.register(
        body.username, body.email, body.password, _client_info(request)
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/login", response_model=Envelope, dependencies=[Depends(rate_limit("login"))])
async def login(body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with username and password.

    Raises:
        401: invalid credentials, with ``remaining_attempts`` for known accounts
        423: account locked
        429: login rate limit exceeded
    """
    result = await runtime.auth.login(body.username, body.password, _client_info(request))
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/refresh", response_model=Envelope, dependencies=[Depends(rate_limit("refresh"))])
async def refresh(
    body: Optional[RefreshRequest] = None, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.refresh(body.refresh_token if body else None)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token,
            expires_in=result.expires_in,
            user=UserResponse.from_user(result.user),
        ),
    )


@router.post("/logout", response_model=Envelope, dependencies=[Depends(rate_limit("generic"))])
async def logout(
    body: Optional[LogoutRequest] = None,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    refresh_token = body.refresh_token if body else None
    await runtime.auth.logout(user.id, refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post(
    "/logout-all", response_model=Envelope, dependencies=[Depends(rate_limit("generic"))]
)
async def logout_all(
    user: User = Depends(get_current_user), runtime: Runtime = Depends(get_runtime)
):
    await runtime.auth.logout_all(user.id)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Logged out from all devices successfully"),
    )


@router.post(
    "/forgot-password",
    response_model=Envelope,
    dependencies=[Depends(rate_limit("reset-request"))],
)
async def forgot_password(body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    """Start a password reset; the answer is identical whether or not the email exists."""
    message = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post(
    "/reset-password",
    response_model=Envelope,
    dependencies=[Depends(rate_limit("reset-confirm"))],
)
async def reset_password(body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="Password reset successfully. Please login with your new password."
        ),
    )


@router.put(
    "/change-password", response_model=Envelope, dependencies=[Depends(rate_limit("generic"))]
)
async def change_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.change_password(user.id, body.current_password, body.new_password)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Password changed successfully. Please login again."),
    )


@router.get(
    "/security-info", response_model=Envelope, dependencies=[Depends(rate_limit("generic"))]
)
async def security_info(
    user: User = Depends(get_current_user), runtime: Runtime = Depends(get_runtime)
):
    info = await runtime.auth.security_info(user.id)
    return Envelope(
        status="ok",
        data=SecurityInfoResponse(
            last_login_at=info.last_login_at,
            last_login_ip=info.last_login_ip,
            failed_login_count=info.failed_login_count,
            is_locked=info.is_locked,
            locked_until=info.locked_until,
            is_email_verified=info.is_email_verified,
            active_sessions=info.active_sessions,
            registered_at=info.registered_at,
            updated_at=info.updated_at,
        ),
    )


@router.get("/profile", response_model=Envelope, dependencies=[Depends(rate_limit("generic"))])
async def get_profile(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/profile", response_model=Envelope, dependencies=[Depends(rate_limit("generic"))])
async def update_profile(
    body: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change username and/or email; a new email must be verified again.

    Raises:
        400: nothing to update
        409: username or email already taken
    """
    updated = await runtime.auth.update_profile(user.id, username=body.username, email=body.email)
    return Envelope(status="ok", data=UserResponse.from_user(updated))


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=MessageResponse(message="Email verified successfully"))


@router.post(
    "/verify-email/resend",
    response_model=Envelope,
    dependencies=[Depends(rate_limit("reset-request"))],
)
async def resend_verification(
    user: User = Depends(get_current_user), runtime: Runtime = Depends(get_runtime)
):
    await runtime.auth.resend_verification(user.id)
    return Envelope(
        status="ok", data=MessageResponse(message="Verification email sent")
    )
