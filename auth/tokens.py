"""
auth/tokens.py -- Signed bearer tokens (JWT, HS256) for access and refresh.

Security design decisions:
  Key handling: SigningKey is an immutable value built once at startup from
       Settings.secret_key and injected into TokenCodec. Nothing in this
       module reads configuration or keeps a lazily-initialized global, so
       concurrent requests cannot race on key construction.

  Token types: every token carries a tokenType claim. Access tokens embed
       the principal's namespace-normalized roles plus display attributes;
       refresh tokens embed nothing but their type. A refresh token is only
       good for minting a new access token -- the authorization filter
       refuses it as a bearer credential.

  Lifetimes: the access TTL must be strictly shorter than the refresh TTL.
       TokenCodec refuses to construct otherwise.

  Verification: parse_and_verify() absorbs every parse/verify exception and
       returns a VerifyResult carrying either trusted claims or a TokenError.
       Callers never see python-jose exceptions and never get claims from a
       token that failed any check (fail closed). The signature is checked
       before expiry, so a forged expired token reports BAD_SIGNATURE.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jws, jwt
from jose.exceptions import ExpiredSignatureError, JWSError, JWTError

from auth.errors import TokenError
from auth.models import Principal
from auth.roles import normalize_role_name, sort_by_authority

logger = logging.getLogger("portal.auth")

ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
_TOKEN_TYPES = (ACCESS, REFRESH)

# Claims the codec owns. Caller-supplied claims cannot override these.
_RESERVED = ("sub", "iat", "exp")

_DECODE_OPTIONS = {
    "require_exp": True,
    "require_iat": True,
    "require_sub": True,
    "leeway": 0,
}


@dataclass(frozen=True)
class SigningKey:
    """Symmetric HMAC key. Construct once per process and share."""

    secret: str = field(repr=False)
    algorithm: str = ALGORITHM

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("Signing secret must not be empty")


@dataclass(frozen=True)
class TokenClaims:
    """Claims from a token whose signature and expiry have been verified."""

    subject: str
    issued_at: datetime
    expires_at: datetime
    token_type: str | None
    roles: tuple[str, ...] = ()
    display_name: str | None = None
    email: str | None = None
    department: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of parse_and_verify(): exactly one of claims / error is set."""

    claims: TokenClaims | None = None
    error: TokenError | None = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


class TokenCodec:
    """Mints and verifies access/refresh tokens with one injected key.

    Usage:
        codec = TokenCodec(SigningKey(secret), timedelta(hours=24), timedelta(days=7))
        access = codec.mint_access(principal)
        result = codec.parse_and_verify(access)
        if result.ok:
            result.claims.roles
    """

    def __init__(self, key: SigningKey, access_ttl: timedelta, refresh_ttl: timedelta) -> None:
        if access_ttl <= timedelta(0):
            raise ValueError("Access token lifetime must be positive")
        if access_ttl >= refresh_ttl:
            raise ValueError("Access token lifetime must be shorter than refresh token lifetime")
        self._key = key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint(self, subject: str, claims: Mapping[str, Any], ttl: timedelta) -> str:
        """Sign a token for subject carrying claims, expiring ttl from now.

        A negative ttl produces a token that is already expired; that is
        useful in tests and harmless otherwise.
        """
        issued = int(datetime.now(timezone.utc).timestamp())
        payload = {k: v for k, v in claims.items() if k not in _RESERVED}
        payload["sub"] = subject
        payload["iat"] = issued
        # Floor, not int(): a sub-second negative ttl must still land in the past.
        payload["exp"] = issued + math.floor(ttl.total_seconds())
        return jwt.encode(payload, self._key.secret, algorithm=self._key.algorithm)

    def mint_access(self, principal: Principal) -> str:
        """Access token for principal. Deactivated roles are left out."""
        roles = []
        for role in sort_by_authority(r for r in principal.roles if r.is_active):
            name = normalize_role_name(role.name)
            if name not in roles:
                roles.append(name)
        claims = {
            "tokenType": ACCESS,
            "roles": roles,
            "displayName": principal.full_name,
            "email": principal.email,
            "department": principal.department,
        }
        return self.mint(principal.username, claims, self.access_ttl)

    def mint_refresh(self, subject: str) -> str:
        return self.mint(subject, {"tokenType": REFRESH}, self.refresh_ttl)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def parse_and_verify(self, token: str | None) -> VerifyResult:
        """Verify structure, algorithm, signature, and expiry, in that order."""
        if token is None or not token.strip():
            return VerifyResult(error=TokenError.EMPTY)
        token = token.strip()
        if token.count(".") != 2:
            return VerifyResult(error=TokenError.MALFORMED)
        try:
            return self._verify(token)
        except Exception:
            # Anything else raised while parsing untrusted input is still
            # just an invalid token.
            logger.debug("Unexpected error while parsing bearer token", exc_info=True)
            return VerifyResult(error=TokenError.MALFORMED)

    def _verify(self, token: str) -> VerifyResult:
        # Header and payload must both decode before the signature is worth
        # checking; after this point a JWSError can only mean the signature.
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError:
            return VerifyResult(error=TokenError.MALFORMED)
        if header.get("alg") != self._key.algorithm:
            return VerifyResult(error=TokenError.UNSUPPORTED_TYPE)

        try:
            jws.verify(token, self._key.secret, algorithms=[self._key.algorithm])
        except JWSError:
            return VerifyResult(error=TokenError.BAD_SIGNATURE)

        try:
            payload = jwt.decode(token, self._key.secret, algorithms=[self._key.algorithm], options=_DECODE_OPTIONS)
        except ExpiredSignatureError:
            return VerifyResult(error=TokenError.EXPIRED)
        except JWTError:
            # Missing sub/iat/exp or a non-integer timestamp.
            return VerifyResult(error=TokenError.MALFORMED)
        return _claims_from_payload(payload)

    def is_expired(self, token: str | None) -> bool:
        """True when the token is not currently valid.

        Fails closed: a token that is malformed, badly signed, or of an
        unsupported type counts as expired too, not only one past its exp.
        Use parse_and_verify() to tell the reasons apart.
        """
        return not self.parse_and_verify(token).ok

    def validate(self, token: str | None, expected_subject: str) -> bool:
        """True only if the token verifies, is unexpired, and names expected_subject."""
        result = self.parse_and_verify(token)
        return result.ok and result.claims.subject == expected_subject


def _claims_from_payload(payload: dict[str, Any]) -> VerifyResult:
    token_type = payload.get("tokenType")
    if token_type is not None and token_type not in _TOKEN_TYPES:
        return VerifyResult(error=TokenError.UNSUPPORTED_TYPE)

    roles = payload.get("roles", [])
    if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
        return VerifyResult(error=TokenError.MALFORMED)

    try:
        issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return VerifyResult(error=TokenError.MALFORMED)

    return VerifyResult(
        claims=TokenClaims(
            subject=str(payload["sub"]),
            issued_at=issued_at,
            expires_at=expires_at,
            token_type=token_type,
            roles=tuple(roles),
            display_name=payload.get("displayName"),
            email=payload.get("email"),
            department=payload.get("department"),
            raw=dict(payload),
        )
    )
