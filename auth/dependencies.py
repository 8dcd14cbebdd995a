"""
auth/dependencies.py -- FastAPI Depends() helpers for authorization.

The authorization filter middleware has already resolved the caller by the
time a route runs; these helpers only read request.state.identity. They are
a second line of defence behind the access policy table, so a route stays
protected even if its policy row is loosened by mistake.

try_get_identity() is the soft variant (returns None when anonymous).
get_identity() raises HTTP 401 when anonymous.
require_roles(...) builds a dependency that also raises HTTP 403 unless the
identity holds at least one of the roles.
get_current_principal() loads the full Principal from the store.

Layer rule: no imports from api/ or core/. auth/dependencies.py may import
from fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthorizationFailure
from auth.models import Identity, Principal
from auth.roles import has_any_role


def try_get_identity(request: Request) -> Identity | None:
    return getattr(request.state, "identity", None)


def get_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request is anonymous.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...
    """
    identity = try_get_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def require_roles(*roles: str) -> Callable[[Request], Identity]:
    """Return a dependency that admits identities holding any of roles.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        def route(identity: Identity = Depends(require_roles("ROLE_ADMIN"))): ...
    """
    if not roles:
        raise ValueError("require_roles() needs at least one role")

    def dependency(request: Request) -> Identity:
        identity = get_identity(request)
        if not has_any_role(identity.roles, roles):
            raise HTTPException(
                status_code=403,
                detail={
                    "code": AuthorizationFailure.INSUFFICIENT_ROLE.value,
                    "message": "You do not have permission to perform this action.",
                },
            )
        return identity

    return dependency


def get_current_principal(request: Request) -> Principal:
    """Load the stored Principal for the authenticated identity.

    Raises HTTP 401 if the principal no longer exists (the token outlived the
    account).
    """
    identity = get_identity(request)
    principal = request.app.state.user_store.get_by_username(identity.subject)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Account no longer exists."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal
