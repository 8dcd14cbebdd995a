"""
auth/filter.py -- Per-request bearer token extraction and identity resolution.

Runs once per request (wired as HTTP middleware in api/main.py) and never
rejects anything itself:

  no Authorization header          -> anonymous
  token fails parse_and_verify()   -> anonymous (logged)
  token verifies but is a refresh  -> anonymous (logged)
  verified access token            -> Identity on request.state.identity

Rejection is the access policy's job, which runs after this. Keeping the two
apart lets public and protected routes share one pass: a stale token sent to
a public endpoint does not break that endpoint.

Expired tokens are reported and dropped, never renewed here. Clients call
POST /api/v1/auth/refresh.

The identity comes entirely from verified claims. No store lookup happens
per request.

Layer rule: no imports from api/ or core/. Imports starlette only for the
Request type.
"""

from __future__ import annotations

import logging

from starlette.requests import Request

from auth.errors import TokenError
from auth.models import Identity
from auth.tokens import ACCESS, TokenClaims, TokenCodec

logger = logging.getLogger("portal.auth")

_SCHEME = "bearer"


def bearer_token(request: Request) -> str | None:
    """Return the token from 'Authorization: Bearer <token>', or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != _SCHEME or not token.strip():
        return None
    return token.strip()


def identity_from_claims(claims: TokenClaims) -> Identity:
    return Identity(
        subject=claims.subject,
        roles=frozenset(claims.roles),
        display_name=claims.display_name or "",
        email=claims.email or "",
        department=claims.department,
    )


def resolve_identity(codec: TokenCodec, token: str | None) -> Identity | None:
    """Verify token and return the Identity it carries, or None."""
    if token is None:
        return None
    result = codec.parse_and_verify(token)
    if not result.ok:
        if result.error is TokenError.EXPIRED:
            logger.debug("Bearer token expired")
        else:
            logger.warning("Rejected bearer token: %s", result.error.value)
        return None
    if result.claims.token_type != ACCESS:
        logger.warning("Non-access token presented as bearer credential for %s", result.claims.subject)
        return None
    return identity_from_claims(result.claims)


def authenticate_request(request: Request, codec: TokenCodec) -> Identity | None:
    """Attach the caller's Identity (or None) to request.state and return it."""
    identity = resolve_identity(codec, bearer_token(request))
    request.state.identity = identity
    return identity
