"""
api/routes/v1/users.py -- Administrative user management.

Routes:
  GET  /api/v1/users                     -- list principals (?q=, ?department=)
  GET  /api/v1/users/check-username      -- is a username free? (public)
  GET  /api/v1/users/check-email         -- is an email free? (public)
  POST /api/v1/users                     -- create a principal with any catalog roles
  GET  /api/v1/users/{id}                -- one principal
  PUT  /api/v1/users/{id}                -- edit profile fields (admins, or the user themselves)
  POST /api/v1/users/{id}/lock           -- lock (admin action)
  POST /api/v1/users/{id}/unlock         -- unlock and reset failed attempts
  POST /api/v1/users/{id}/activate       -- reactivate
  POST /api/v1/users/{id}/deactivate     -- deactivate (principals are never deleted)
  PUT  /api/v1/users/{id}/roles          -- replace the role set

Unless noted, routes require ROLE_ADMIN or ROLE_BUSINESS_SUPPORT.

Security:
  An administrator cannot lock or deactivate their own account.
  Only ROLE_ADMIN holders can grant ROLE_ADMIN, and only they can change
  the state, roles or profile of a principal who holds ROLE_ADMIN.
  State changes go through auth.account transitions; the store persists the
  result.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    EMAIL_PATTERN,
    USERNAME_PATTERN,
    EmailCheckResponse,
    UserCreate,
    UsernameCheckResponse,
    UserResponse,
    UserRolesUpdate,
    UserUpdate,
)
from auth import account
from auth.dependencies import get_identity, require_roles
from auth.errors import DuplicateAccountError, RoleNotFoundError
from auth.models import Identity, Principal, SecurityState
from auth.roles import has_any_role, normalize_role_name
from auth.store import UserStore
from auth.verifier import CredentialVerifier

logger = logging.getLogger("portal.api")

_ADMIN = "ROLE_ADMIN"
_SUPPORT = "ROLE_BUSINESS_SUPPORT"

require_user_admin = require_roles(_ADMIN, _SUPPORT)

router = APIRouter()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    q: Optional[str] = Query(default=None, max_length=100),
    department: Optional[str] = Query(default=None, max_length=100),
    identity: Identity = Depends(require_user_admin),
) -> list[UserResponse]:
    """List principals.

    q matches a case-insensitive substring of username, full name, or email;
    department must match exactly.
    """
    store: UserStore = request.app.state.user_store
    return [UserResponse.from_principal(p) for p in store.list_users(q=q, department=department)]


# Registered before /users/{user_id} so the literal paths win.
@router.get("/users/check-username", response_model=UsernameCheckResponse)
def check_username(request: Request, username: str = Query(min_length=1, max_length=50)) -> UsernameCheckResponse:
    store: UserStore = request.app.state.user_store
    return UsernameCheckResponse(
        username=username,
        valid=re.fullmatch(USERNAME_PATTERN, username) is not None,
        available=not store.username_exists(username),
    )


@router.get("/users/check-email", response_model=EmailCheckResponse)
def check_email(request: Request, email: str = Query(min_length=1, max_length=100)) -> EmailCheckResponse:
    store: UserStore = request.app.state.user_store
    return EmailCheckResponse(
        email=email,
        valid=re.fullmatch(EMAIL_PATTERN, email) is not None,
        available=not store.email_exists(email),
    )


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, identity: Identity = Depends(require_user_admin)) -> UserResponse:
    return UserResponse.from_principal(_get_or_404(request.app.state.user_store, user_id))


# ---------------------------------------------------------------------------
# Create / edit
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request, body: UserCreate, identity: Identity = Depends(require_user_admin)
) -> UserResponse:
    """Create a principal directly, with any catalog roles."""
    names = [normalize_role_name(r) for r in body.roles]
    _guard_admin_grant(names, identity)
    verifier: CredentialVerifier = request.app.state.verifier
    try:
        principal = verifier.create_principal(
            body.username,
            body.password,
            body.email,
            roles=names,
            full_name=body.full_name,
            department=body.department,
            position=body.position,
            phone_number=body.phone_number,
            active=body.is_active,
        )
    except RoleNotFoundError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_role", "message": str(exc)},
        ) from exc
    except DuplicateAccountError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": str(exc), "detail": exc.field},
        ) from exc
    logger.info("%s created user %s", identity.subject, principal.username)
    return UserResponse.from_principal(principal)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    identity: Identity = Depends(get_identity),
) -> UserResponse:
    """Edit profile fields. Any signed-in user may edit their own profile."""
    store: UserStore = request.app.state.user_store
    target = _get_or_404(store, user_id)
    if target.username != identity.subject:
        if not has_any_role(identity.roles, [_ADMIN, _SUPPORT]):
            raise HTTPException(
                status_code=403,
                detail={"code": "insufficient_role", "message": "You can only edit your own profile."},
            )
        _guard_admin_target(target, identity)

    changes = body.model_dump(exclude_unset=True)
    email = changes.get("email")
    if email and email != target.email and store.email_exists(email):
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists.", "detail": "email"},
        )
    try:
        store.update_profile(user_id, changes)
    except IntegrityError as exc:
        # Lost a race with another account taking the same email.
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists.", "detail": "email"},
        ) from exc
    logger.info("%s updated profile of %s (%s)", identity.subject, target.username, ",".join(sorted(changes)))
    return UserResponse.from_principal(_get_or_404(store, user_id))


# ---------------------------------------------------------------------------
# Security state transitions
# ---------------------------------------------------------------------------


@router.post("/users/{user_id}/lock", response_model=UserResponse)
def lock_user(request: Request, user_id: int, identity: Identity = Depends(require_user_admin)) -> UserResponse:
    return _transition(request, user_id, identity, account.lock, guard_self=True)


@router.post("/users/{user_id}/unlock", response_model=UserResponse)
def unlock_user(request: Request, user_id: int, identity: Identity = Depends(require_user_admin)) -> UserResponse:
    return _transition(request, user_id, identity, account.unlock)


@router.post("/users/{user_id}/activate", response_model=UserResponse)
def activate_user(request: Request, user_id: int, identity: Identity = Depends(require_user_admin)) -> UserResponse:
    return _transition(request, user_id, identity, account.activate)


@router.post("/users/{user_id}/deactivate", response_model=UserResponse)
def deactivate_user(
    request: Request, user_id: int, identity: Identity = Depends(require_user_admin)
) -> UserResponse:
    return _transition(request, user_id, identity, account.deactivate, guard_self=True)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.put("/users/{user_id}/roles", response_model=UserResponse)
def replace_roles(
    request: Request,
    user_id: int,
    body: UserRolesUpdate,
    identity: Identity = Depends(require_user_admin),
) -> UserResponse:
    """Replace the user's roles. Takes effect on the user's next token refresh."""
    store: UserStore = request.app.state.user_store
    target = _get_or_404(store, user_id)
    _guard_admin_target(target, identity)

    names = [normalize_role_name(r) for r in body.roles]
    _guard_admin_grant(names, identity)
    try:
        store.set_user_roles(user_id, names)
    except RoleNotFoundError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_role", "message": str(exc)},
        ) from exc
    logger.info("%s set roles of %s to %s", identity.subject, target.username, ",".join(names))
    return UserResponse.from_principal(_get_or_404(store, user_id))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_404(store: UserStore, user_id: int) -> Principal:
    principal = store.get_by_id(user_id)
    if principal is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return principal


def _guard_admin_grant(role_names: list[str], identity: Identity) -> None:
    if _ADMIN in role_names and not has_any_role(identity.roles, [_ADMIN]):
        raise HTTPException(
            status_code=403,
            detail={"code": "insufficient_role", "message": "Only administrators can grant ROLE_ADMIN."},
        )


def _guard_admin_target(target: Principal, identity: Identity) -> None:
    # Deactivated ROLE_ADMIN assignments count too; reactivating the role restores them.
    if has_any_role(target.roles, [_ADMIN]) and not has_any_role(identity.roles, [_ADMIN]):
        raise HTTPException(
            status_code=403,
            detail={"code": "insufficient_role", "message": "Only administrators can manage administrator accounts."},
        )


def _transition(
    request: Request,
    user_id: int,
    identity: Identity,
    action: Callable[[SecurityState], account.AccountState],
    guard_self: bool = False,
) -> UserResponse:
    store: UserStore = request.app.state.user_store
    target = _get_or_404(store, user_id)
    if guard_self and target.username == identity.subject:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_lockout", "message": "You cannot lock or deactivate your own account."},
        )
    _guard_admin_target(target, identity)
    state = action(target.security)
    store.save_security(user_id, target.security)
    logger.info("%s applied %s to %s -> %s", identity.subject, action.__name__, target.username, state.value)
    return UserResponse.from_principal(_get_or_404(store, user_id))
