"""Tests for token issuance, verification, password hashing and strength rules."""

import base64
import json

import pytest

from movieauth.config import Settings
from movieauth.service.result import Err, Ok
from movieauth.service.tokens import TokenError, TokenKind, TokenService
from movieauth.storage.models import ExternalAccount, LocalAccount, Role, User

SECRET = "unit-test-secret-value-that-is-long-enough-0123456789"


def _settings(**overrides) -> Settings:
    values = {"jwt_secret": SECRET, "password_hash_cost": 4}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def tokens():
    return TokenService(_settings())


@pytest.fixture
def user():
    return User.new(
        "alice",
        LocalAccount(role=Role.CUSTOMER, password_hash="unused"),
        email="alice@example.com",
    )


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    segment += "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment))


class TestTokenIssuance:
    """Claims carried by access and refresh tokens."""

    def test_access_token_claims(self, tokens, user):
        claims = _payload(tokens.issue_access_token(user))
        assert claims["id"] == user.id
        assert claims["username"] == "alice"
        assert claims["email"] == "alice@example.com"
        assert claims["role"] == "customer"
        assert claims["isExternalAuthUser"] is False
        assert claims["iss"] == "auth-service"
        assert claims["aud"] == "movie-list-app"
        assert claims["token_type"] == "access"
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_refresh_token_carries_only_identity(self, tokens, user):
        claims = _payload(tokens.issue_refresh_token(user))
        assert claims["id"] == user.id
        assert claims["token_type"] == "refresh"
        assert "username" not in claims
        assert "email" not in claims
        assert claims["exp"] - claims["iat"] == 7 * 24 * 60 * 60

    def test_pair_reports_access_lifetime(self, tokens, user):
        pair = tokens.issue_token_pair(user)
        assert pair.expires_in == 900
        assert pair.token_type == "bearer"
        assert pair.access_token != pair.refresh_token

    def test_tokens_have_unique_jti(self, tokens, user):
        first = _payload(tokens.issue_refresh_token(user))
        second = _payload(tokens.issue_refresh_token(user))
        assert first["jti"] != second["jti"]

    def test_external_user_flag(self, tokens):
        external = User.new(
            "bob", ExternalAccount(role=Role.CUSTOMER, provider="google"), external_id="g-1"
        )
        claims = _payload(tokens.issue_access_token(external))
        assert claims["isExternalAuthUser"] is True


class TestTokenVerification:
    """Every verification outcome is an Ok or an Err, never an exception."""

    def test_valid_access_token(self, tokens, user):
        result = tokens.verify(tokens.issue_access_token(user), TokenKind.ACCESS)
        assert isinstance(result, Ok)
        assert result.value.user_id == user.id
        assert result.value.username == "alice"
        assert result.value.role == "customer"

    def test_valid_refresh_token(self, tokens, user):
        result = tokens.verify(tokens.issue_refresh_token(user), TokenKind.REFRESH)
        assert isinstance(result, Ok)
        assert result.value.kind is TokenKind.REFRESH

    def test_refresh_token_rejected_as_access(self, tokens, user):
        result = tokens.verify(tokens.issue_refresh_token(user), TokenKind.ACCESS)
        assert result == Err(TokenError.INVALID)

    def test_access_token_rejected_as_refresh(self, tokens, user):
        result = tokens.verify(tokens.issue_access_token(user), TokenKind.REFRESH)
        assert result == Err(TokenError.INVALID)

    def test_separate_refresh_secret(self, user):
        service = TokenService(_settings(jwt_refresh_secret="another-refresh-secret-0123456789abcdef"))
        refresh = service.issue_refresh_token(user)
        assert isinstance(service.verify(refresh, TokenKind.REFRESH), Ok)
        plain = TokenService(_settings())
        assert plain.verify(refresh, TokenKind.REFRESH) == Err(TokenError.INVALID)

    def test_expired_token(self, user):
        service = TokenService(_settings(access_token_ttl_minutes=0))
        result = service.verify(service.issue_access_token(user), TokenKind.ACCESS)
        assert result == Err(TokenError.EXPIRED)
        assert not result.is_ok

    def test_leeway_accepts_just_expired_token(self, user):
        service = TokenService(_settings(access_token_ttl_minutes=0, jwt_leeway_seconds=30))
        assert isinstance(service.verify(service.issue_access_token(user), TokenKind.ACCESS), Ok)

    def test_wrong_secret(self, tokens, user):
        other = TokenService(_settings(jwt_secret="a-completely-different-secret-0123456789"))
        result = other.verify(tokens.issue_access_token(user), TokenKind.ACCESS)
        assert result == Err(TokenError.INVALID)

    def test_wrong_audience(self, tokens, user):
        other = TokenService(_settings(jwt_audience="some-other-app"))
        result = other.verify(tokens.issue_access_token(user), TokenKind.ACCESS)
        assert result == Err(TokenError.INVALID)

    def test_wrong_issuer(self, tokens, user):
        other = TokenService(_settings(jwt_issuer="someone-else"))
        result = other.verify(tokens.issue_access_token(user), TokenKind.ACCESS)
        assert result == Err(TokenError.INVALID)

    def test_tampered_payload(self, tokens, user):
        header, payload, signature = tokens.issue_access_token(user).split(".")
        claims = _payload(f"{header}.{payload}.{signature}")
        claims["role"] = "admin"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        result = tokens.verify(f"{header}.{forged}.{signature}", TokenKind.ACCESS)
        assert result == Err(TokenError.INVALID)

    def test_none_algorithm_rejected(self, tokens, user):
        _, payload, _ = tokens.issue_access_token(user).split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        result = tokens.verify(f"{header}.{payload}.", TokenKind.ACCESS)
        assert result == Err(TokenError.INVALID)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_malformed_tokens(self, tokens, garbage):
        assert tokens.verify(garbage, TokenKind.ACCESS) == Err(TokenError.INVALID)


class TestPasswordHashing:
    """argon2id hashing with a cost-derived memory parameter."""

    def test_hash_and_verify(self, tokens):
        hashed = tokens.hash_password("Sup3r$ecret")
        assert hashed.startswith("$argon2id$")
        assert tokens.verify_password("Sup3r$ecret", hashed)
        assert not tokens.verify_password("Sup3r$ecreT", hashed)

    def test_same_password_hashes_differently(self, tokens):
        assert tokens.hash_password("Sup3r$ecret") != tokens.hash_password("Sup3r$ecret")

    def test_cost_controls_memory(self, tokens):
        assert "m=256," in tokens.hash_password("Sup3r$ecret")

    def test_missing_or_garbage_hash(self, tokens):
        assert tokens.verify_password("anything", None) is False
        assert tokens.verify_password("anything", "not-a-hash") is False

    def test_burn_verification_returns_nothing(self, tokens):
        assert tokens.burn_verification("whatever") is None
        assert tokens._dummy_hash is not None


class TestPasswordStrength:
    def test_strong_password(self, tokens):
        check = tokens.validate_password_strength("Sup3r$ecret")
        assert check.valid
        assert check.violations == []

    def test_all_violations_in_order(self, tokens):
        check = tokens.validate_password_strength("   ")
        assert not check.valid
        assert check.violations == [
            "Password must be at least 8 characters long",
            "Password must contain at least one uppercase letter",
            "Password must contain at least one lowercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]

    def test_single_missing_rule(self, tokens):
        check = tokens.validate_password_strength("Password123")
        assert check.violations == ["Password must contain at least one special character"]

    def test_special_character_set(self, tokens):
        assert tokens.validate_password_strength("Abcdefg1?").valid
        # underscore is not in the accepted set
        assert not tokens.validate_password_strength("Abcdefg1_").valid


class TestOpaqueTokens:
    def test_length_and_alphabet(self, tokens):
        token = tokens.generate_opaque_token()
        assert len(token) == 64
        int(token, 16)

    def test_unique(self, tokens):
        assert len({tokens.generate_opaque_token() for _ in range(50)}) == 50
