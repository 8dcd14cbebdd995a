"""Unit tests for auth/tokens.py -- minting and verifying bearer tokens.

Covers:
- access and refresh tokens carry exactly the claims they were minted with
- roles are namespace-normalized and ordered by authority
- an already-expired token reports EXPIRED immediately
- validate() needs both a subject match and non-expiry
- empty, malformed, foreign-key, wrong-algorithm and unknown-type tokens
- lifetime ordering is enforced at construction
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt

from auth.errors import TokenError
from auth.models import Principal, Role
from auth.tokens import ACCESS, REFRESH, SigningKey, TokenCodec


def _principal(**overrides) -> Principal:
    fields = dict(
        username="testuser",
        email="testuser@example.com",
        hashed_password="x",
        full_name="Test User",
        department="Investigations",
        roles=[Role("ROLE_EMPLOYEE", priority=100), Role("INVESTIGATOR_TYPE1", priority=31)],
    )
    fields.update(overrides)
    return Principal(**fields)


class TestRoundTrip:
    def test_access_token_claims(self, codec: TokenCodec) -> None:
        """Every embedded claim survives mint -> parse_and_verify."""
        result = codec.parse_and_verify(codec.mint_access(_principal()))
        assert result.ok and result.error is None
        claims = result.claims
        assert claims.subject == "testuser"
        assert claims.token_type == ACCESS
        assert claims.roles == ("ROLE_INVESTIGATOR_TYPE1", "ROLE_EMPLOYEE")
        assert claims.display_name == "Test User"
        assert claims.email == "testuser@example.com"
        assert claims.department == "Investigations"
        assert claims.expires_at - claims.issued_at == timedelta(hours=1)

    def test_refresh_token_carries_only_type(self, codec: TokenCodec) -> None:
        result = codec.parse_and_verify(codec.mint_refresh("testuser"))
        assert result.ok
        assert result.claims.token_type == REFRESH
        assert result.claims.roles == ()
        assert result.claims.email is None
        assert result.claims.expires_at - result.claims.issued_at == timedelta(hours=7)
        assert set(result.claims.raw) == {"sub", "iat", "exp", "tokenType"}

    def test_duplicate_and_inactive_roles_dropped(self, codec: TokenCodec) -> None:
        roles = [Role("ADMIN", priority=1), Role("ROLE_ADMIN", priority=1), Role("ROLE_OLD", is_active=False)]
        claims = codec.parse_and_verify(codec.mint_access(_principal(roles=roles))).claims
        assert claims.roles == ("ROLE_ADMIN",)

    def test_caller_cannot_override_reserved_claims(self, codec: TokenCodec) -> None:
        token = codec.mint("alice", {"sub": "mallory", "exp": 1, "tokenType": ACCESS}, timedelta(minutes=5))
        claims = codec.parse_and_verify(token).claims
        assert claims.subject == "alice"
        assert claims.expires_at > claims.issued_at


class TestExpiryAndValidate:
    def test_negative_ttl_is_expired_immediately(self, codec: TokenCodec) -> None:
        token = codec.mint("testuser", {"tokenType": ACCESS}, timedelta(seconds=-1))
        result = codec.parse_and_verify(token)
        assert not result.ok
        assert result.error is TokenError.EXPIRED
        assert result.claims is None
        assert codec.is_expired(token)

    @pytest.mark.parametrize("millis", [-1, -500, -999])
    def test_sub_second_negative_ttl_is_expired(self, codec: TokenCodec, millis: int) -> None:
        """exp rounds down, so even -1ms lands strictly before iat."""
        token = codec.mint("testuser", {"tokenType": ACCESS}, timedelta(milliseconds=millis))
        claims = jwt.get_unverified_claims(token)
        assert claims["exp"] < claims["iat"]
        assert codec.parse_and_verify(token).error is TokenError.EXPIRED

    def test_is_expired_fails_closed_on_bad_tokens(self, codec: TokenCodec) -> None:
        assert codec.is_expired("not.a.token")
        assert codec.is_expired(None)
        assert not codec.is_expired(codec.mint_access(_principal()))

    def test_validate_requires_subject_match(self, codec: TokenCodec) -> None:
        token = codec.mint_access(_principal())
        assert codec.validate(token, "testuser")
        assert not codec.validate(token, "someoneelse")

    def test_validate_rejects_expired_token_for_right_subject(self, codec: TokenCodec) -> None:
        token = codec.mint("testuser", {}, timedelta(seconds=-10))
        assert not codec.validate(token, "testuser")


class TestRejection:
    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_empty(self, codec: TokenCodec, token) -> None:
        assert codec.parse_and_verify(token).error is TokenError.EMPTY

    @pytest.mark.parametrize("token", ["abc", "a.b", "a.b.c", "a.b.c.d", "!!!.@@@.###"])
    def test_malformed(self, codec: TokenCodec, token: str) -> None:
        result = codec.parse_and_verify(token)
        assert result.error is TokenError.MALFORMED
        assert result.claims is None

    def test_foreign_key_is_bad_signature(self, codec: TokenCodec) -> None:
        other = TokenCodec(SigningKey("another-secret-0123456789abcdef0123"), timedelta(hours=1), timedelta(hours=7))
        result = codec.parse_and_verify(other.mint_access(_principal()))
        assert result.error is TokenError.BAD_SIGNATURE
        assert result.claims is None

    def test_forged_expired_token_reports_signature_first(self, codec: TokenCodec) -> None:
        other = TokenCodec(SigningKey("another-secret-0123456789abcdef0123"), timedelta(hours=1), timedelta(hours=7))
        token = other.mint("testuser", {}, timedelta(seconds=-30))
        assert codec.parse_and_verify(token).error is TokenError.BAD_SIGNATURE

    def test_tampered_payload_is_bad_signature(self, codec: TokenCodec) -> None:
        header, _, signature = codec.mint_access(_principal()).split(".")
        forged_payload = codec.mint_access(_principal(roles=[Role("ROLE_ADMIN", priority=1)])).split(".")[1]
        result = codec.parse_and_verify(f"{header}.{forged_payload}.{signature}")
        assert result.error is TokenError.BAD_SIGNATURE

    def test_other_algorithm_unsupported(self, codec: TokenCodec) -> None:
        token = jwt.encode(
            {"sub": "testuser", "iat": 1, "exp": 4102444800},
            "unit-test-signing-secret-0123456789abcdef",
            algorithm="HS512",
        )
        assert codec.parse_and_verify(token).error is TokenError.UNSUPPORTED_TYPE

    def test_unknown_token_type_unsupported(self, codec: TokenCodec) -> None:
        token = codec.mint("testuser", {"tokenType": "password_reset"}, timedelta(minutes=5))
        assert codec.parse_and_verify(token).error is TokenError.UNSUPPORTED_TYPE

    def test_non_list_roles_malformed(self, codec: TokenCodec) -> None:
        token = codec.mint("testuser", {"tokenType": ACCESS, "roles": "ROLE_ADMIN"}, timedelta(minutes=5))
        assert codec.parse_and_verify(token).error is TokenError.MALFORMED


class TestConstruction:
    def test_access_must_be_shorter_than_refresh(self) -> None:
        key = SigningKey("k" * 32)
        with pytest.raises(ValueError):
            TokenCodec(key, timedelta(hours=7), timedelta(hours=7))
        with pytest.raises(ValueError):
            TokenCodec(key, timedelta(days=8), timedelta(days=7))

    def test_non_positive_access_ttl_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenCodec(SigningKey("k" * 32), timedelta(0), timedelta(hours=1))

    def test_empty_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            SigningKey("")

    def test_secret_not_in_repr(self) -> None:
        assert "k" * 32 not in repr(SigningKey("k" * 32))
