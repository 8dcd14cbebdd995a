"""
api/routes/v1/roles.py -- Role catalog administration.

Routes:
  GET    /api/v1/roles                 -- list, ordered by priority (filters below)
  GET    /api/v1/roles/check-name      -- is a proposed name valid and free?
  GET    /api/v1/roles/{id}            -- one role with its member count
  POST   /api/v1/roles                 -- create a custom role
  PATCH  /api/v1/roles/{id}            -- update label, description, priority
  POST   /api/v1/roles/{id}/activate
  POST   /api/v1/roles/{id}/deactivate
  DELETE /api/v1/roles/{id}            -- custom roles without members only

Reads are open to ROLE_ADMIN and ROLE_BUSINESS_SUPPORT; writes need ROLE_ADMIN.

Name and priority rules are enforced by UserStore.create_role/update_role.
This module only maps their exceptions to HTTP status codes.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import RoleCreate, RoleNameCheckResponse, RoleResponse, RoleUpdate
from auth.dependencies import require_roles
from auth.errors import InvalidRoleNameError, RoleNotFoundError
from auth.models import Identity, Role
from auth.roles import validate_role_name
from auth.store import UserStore

logger = logging.getLogger("portal.api")

require_role_reader = require_roles("ROLE_ADMIN", "ROLE_BUSINESS_SUPPORT")
require_role_admin = require_roles("ROLE_ADMIN")

router = APIRouter()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    active_only: bool = Query(default=False, alias="activeOnly"),
    kind: Optional[Literal["system", "custom"]] = None,
    q: Optional[str] = Query(default=None, max_length=50),
    identity: Identity = Depends(require_role_reader),
) -> list[RoleResponse]:
    """List roles by authority (priority ascending, then name).

    kind=system|custom narrows to catalog or administrator-created roles;
    q matches a case-insensitive substring of the name or display name.
    """
    store: UserStore = request.app.state.user_store
    roles = store.list_roles(active_only=active_only)
    if kind is not None:
        roles = [r for r in roles if r.is_system == (kind == "system")]
    if q:
        needle = q.lower()
        roles = [r for r in roles if needle in r.name.lower() or needle in r.display_name.lower()]
    return [RoleResponse.from_role(r, len(store.users_for_role(r.id))) for r in roles]


@router.get("/roles/check-name", response_model=RoleNameCheckResponse)
def check_role_name(
    request: Request,
    name: str = Query(min_length=1, max_length=50),
    identity: Identity = Depends(require_role_reader),
) -> RoleNameCheckResponse:
    store: UserStore = request.app.state.user_store
    try:
        validate_role_name(name)
        valid = True
    except InvalidRoleNameError:
        valid = False
    return RoleNameCheckResponse(name=name, valid=valid, available=store.get_role_by_name(name) is None)


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: int, identity: Identity = Depends(require_role_reader)) -> RoleResponse:
    store: UserStore = request.app.state.user_store
    role = _get_or_404(store, role_id)
    return RoleResponse.from_role(role, len(store.users_for_role(role_id)))


# ---------------------------------------------------------------------------
# Mutations (admin only)
# ---------------------------------------------------------------------------


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, identity: Identity = Depends(require_role_admin)) -> RoleResponse:
    """Create a custom (non-system) role."""
    store: UserStore = request.app.state.user_store
    role = Role(
        name=body.name,
        display_name=body.display_name,
        description=body.description,
        priority=body.priority,
    )
    try:
        role_id = store.create_role(role)
    except ValueError as exc:
        # InvalidRoleNameError is a ValueError; so is an out-of-range priority.
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_role", "message": str(exc)},
        ) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f"Role {body.name} already exists."},
        ) from exc
    logger.info("%s created role %s", identity.subject, body.name)
    return RoleResponse.from_role(_get_or_404(store, role_id))


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    identity: Identity = Depends(require_role_admin),
) -> RoleResponse:
    store: UserStore = request.app.state.user_store
    _get_or_404(store, role_id)
    try:
        store.update_role(
            role_id,
            display_name=body.display_name,
            description=body.description,
            priority=body.priority,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_role", "message": str(exc)},
        ) from exc
    return RoleResponse.from_role(_get_or_404(store, role_id), len(store.users_for_role(role_id)))


@router.post("/roles/{role_id}/activate", response_model=RoleResponse)
def activate_role(request: Request, role_id: int, identity: Identity = Depends(require_role_admin)) -> RoleResponse:
    return _set_active(request, role_id, True, identity)


@router.post("/roles/{role_id}/deactivate", response_model=RoleResponse)
def deactivate_role(request: Request, role_id: int, identity: Identity = Depends(require_role_admin)) -> RoleResponse:
    return _set_active(request, role_id, False, identity)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: int, identity: Identity = Depends(require_role_admin)) -> Response:
    """Delete a custom role. System roles and roles still held by users are refused."""
    store: UserStore = request.app.state.user_store
    role = _get_or_404(store, role_id)
    if role.is_system:
        raise HTTPException(
            status_code=400,
            detail={"code": "system_role", "message": "System roles cannot be deleted."},
        )
    try:
        store.delete_role(role_id)
    except RoleNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)}) from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail={"code": "role_in_use", "message": str(exc)}) from exc
    logger.info("%s deleted role %s", identity.subject, role.name)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_404(store: UserStore, role_id: int) -> Role:
    role = store.get_role(role_id)
    if role is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Role not found."},
        )
    return role


def _set_active(request: Request, role_id: int, active: bool, identity: Identity) -> RoleResponse:
    store: UserStore = request.app.state.user_store
    _get_or_404(store, role_id)
    store.set_role_active(role_id, active)
    logger.info("%s set role %d active=%s", identity.subject, role_id, active)
    return RoleResponse.from_role(_get_or_404(store, role_id), len(store.users_for_role(role_id)))
