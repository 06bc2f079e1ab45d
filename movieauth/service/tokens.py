from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from movieauth.config import Settings
from movieauth.logging import get_logger
from movieauth.service.result import Err, Ok, Result
from movieauth.storage.models import User

logger = get_logger(__name__)

SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(str, Enum):
    INVALID = "invalid_token"
    EXPIRED = "token_expired"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    kind: TokenKind
    jti: str
    issued_at: int
    expires_at: int
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    is_external_auth_user: bool = False


@dataclass
class PasswordCheck:
    valid: bool
    violations: list[str] = field(default_factory=list)


class TokenService:
    """Signed access/refresh tokens, password hashing and opaque one-shot tokens.

    Tokens are compact HS256 JWTs. Access and refresh tokens may be signed with
    different secrets; the refresh secret falls back to the access secret.
    Verification never raises: every outcome is an ``Ok(TokenClaims)`` or an
    ``Err(TokenError)``.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            type=Type.ID,
            time_cost=3,
            memory_cost=2 ** (settings.password_hash_cost + 4),
            parallelism=4,
        )
        # Precomputed so unknown-user logins spend comparable time hashing
        self._dummy_hash: Optional[str] = None

    # -- JWT -----------------------------------------------------------------

    def _secret_for(self, kind: TokenKind) -> bytes:
        if kind is TokenKind.REFRESH:
            return self.settings.refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(
            self._secret_for(kind), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], kind: TokenKind) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _base_claims(self, kind: TokenKind, ttl_seconds: int) -> dict[str, Any]:
        now = int(time.time())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + ttl_seconds,
            "token_type": kind.value,
            "jti": str(uuid.uuid4()),
        }

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_days * 24 * 60 * 60

    def issue_access_token(self, user: User) -> str:
        payload = self._base_claims(TokenKind.ACCESS, self.access_ttl_seconds)
        payload.update(
            {
                "id": user.id,
                "username": user.username,
                "email": user.email,
                "role": user.role.value,
                "isExternalAuthUser": user.is_external_auth_user,
            }
        )
        return self._encode_jwt(payload, TokenKind.ACCESS)

    def issue_refresh_token(self, user: User) -> str:
        payload = self._base_claims(TokenKind.REFRESH, self.refresh_ttl_seconds)
        payload["id"] = user.id
        return self._encode_jwt(payload, TokenKind.REFRESH)

    def issue_token_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user),
            refresh_token=self.issue_refresh_token(user),
            expires_in=self.access_ttl_seconds,
        )

    def verify(self, token: str, kind: TokenKind) -> Result[TokenClaims, TokenError]:
        """Check signature, algorithm, issuer, audience, type and expiry.

        Expiry is only reported once every other check has passed, so an
        ``EXPIRED`` result always refers to an otherwise genuine token.
        """
        if not token or not isinstance(token, str):
            return Err(TokenError.INVALID)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return Err(TokenError.INVALID)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return Err(TokenError.INVALID)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return Err(TokenError.INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return Err(TokenError.INVALID)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return Err(TokenError.INVALID)
        if not isinstance(payload, dict):
            return Err(TokenError.INVALID)

        if payload.get("iss") != self.settings.jwt_issuer:
            return Err(TokenError.INVALID)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return Err(TokenError.INVALID)
        if payload.get("token_type") != kind.value:
            return Err(TokenError.INVALID)
        user_id = payload.get("id")
        jti = payload.get("jti")
        if not user_id or not jti:
            return Err(TokenError.INVALID)
        try:
            exp_ts = int(payload["exp"])
            iat_ts = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return Err(TokenError.INVALID)
        if exp_ts <= time.time() - self.settings.jwt_leeway_seconds:
            return Err(TokenError.EXPIRED)

        return Ok(
            TokenClaims(
                user_id=str(user_id),
                kind=kind,
                jti=str(jti),
                issued_at=iat_ts,
                expires_at=exp_ts,
                username=payload.get("username"),
                email=payload.get("email"),
                role=payload.get("role"),
                is_external_auth_user=bool(payload.get("isExternalAuthUser", False)),
            )
        )

    # -- passwords -----------------------------------------------------------

    def hash_password(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify_password(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def burn_verification(self, plaintext: str) -> None:
        """Run a throwaway verify so unknown usernames cost the same as wrong passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_hex(16))
        self.verify_password(plaintext, self._dummy_hash)

    def validate_password_strength(self, plaintext: str) -> PasswordCheck:
        violations: list[str] = []
        min_length = self.settings.password_min_length
        if len(plaintext) < min_length:
            violations.append(f"Password must be at least {min_length} characters long")
        if not re.search(r"[A-Z]", plaintext):
            violations.append("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", plaintext):
            violations.append("Password must contain at least one lowercase letter")
        if not re.search(r"\d", plaintext):
            violations.append("Password must contain at least one number")
        if not _SPECIAL_RE.search(plaintext):
            violations.append("Password must contain at least one special character")
        return PasswordCheck(valid=not violations, violations=violations)

    # -- opaque tokens -------------------------------------------------------

    def generate_opaque_token(self) -> str:
        return secrets.token_hex(self.settings.opaque_token_bytes)
