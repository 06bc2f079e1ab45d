from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An auth failure the HTTP layer turns into an error envelope.

    Subclasses fix ``status_code`` and the machine-readable ``error_code``;
    ``detail`` carries structured extras such as remaining attempts or the
    lockout countdown. Codes in use:

    ====  ==================================================================
    400   validation_error, weak_password, invalid_or_expired_token
    401   unauthorized, missing_token, invalid_credentials, invalid_token,
          token_expired, invalid_refresh_token, invalid_current_password
    404   not_found
    409   conflict
    423   account_locked
    429   rate_limited
    500   server_error
    ====  ==================================================================
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})
        self.status_code = status_code or type(self).status_code
        self.error_code = error_code or type(self).error_code


class ValidationError(ServiceError):
    pass


class WeakPasswordError(ValidationError):
    error_code = "weak_password"

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__(
            "Password does not meet requirements", detail={"violations": self.violations}
        )


class InvalidOrExpiredTokenError(ValidationError):
    """Reset or verification token is unknown, spent or past its expiry."""

    error_code = "invalid_or_expired_token"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class MissingTokenError(AuthenticationError):
    error_code = "missing_token"


class InvalidCredentialsError(AuthenticationError):
    """Wrong username or password.

    ``remaining_attempts`` is only known, and only reported, for existing
    accounts.
    """

    error_code = "invalid_credentials"

    def __init__(self, remaining_attempts: Optional[int] = None) -> None:
        self.remaining_attempts = remaining_attempts
        extra = {} if remaining_attempts is None else {"remaining_attempts": remaining_attempts}
        super().__init__("Invalid credentials", detail=extra)


class InvalidCurrentPasswordError(AuthenticationError):
    error_code = "invalid_current_password"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Username, email or external identity already taken."""

    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, minutes_remaining: int) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(
            f"Account is locked for {minutes_remaining} more minutes",
            detail={"minutes_remaining": minutes_remaining},
        )


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests, please try again later",
        *,
        retry_after: int = 0,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, detail={"retry_after": retry_after})


class InternalError(ServiceError):
    status_code = 500
    error_code = "server_error"
