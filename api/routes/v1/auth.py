"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login      -- password login; returns access + refresh tokens
  POST /api/v1/auth/refresh    -- new access token from a refresh token
  POST /api/v1/auth/register   -- self-registration with a self-assignable role
  POST /api/v1/auth/logout     -- stateless acknowledgement
  GET  /api/v1/auth/me         -- current profile, roles, primary role, scopes

Security:
  POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  Login failures answer HTTP 200 with success=false. The message names the
  specific reason unless EXPOSE_LOGIN_FAILURE_REASON=false.
  Cache-Control: no-store on every response that carries a token.

login, refresh and register are plain `def` so FastAPI runs them in its
thread pool -- bcrypt and SQLite calls never block the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    UserInfo,
    UserResponse,
)
from auth.dependencies import get_current_principal
from auth.errors import (
    GENERIC_LOGIN_FAILURE,
    LOGIN_FAILURE_MESSAGES,
    DuplicateAccountError,
    RoleNotAssignableError,
)
from auth.models import Principal
from auth.verifier import CredentialVerifier
from core.config import get_settings

# Auth policy (see auth/policy.py default_rules):
# - POST /api/v1/auth/login:     public
# - POST /api/v1/auth/refresh:   public -- the refresh token is the credential
# - POST /api/v1/auth/register:  public
# - POST /api/v1/auth/logout:    public -- nothing server-side to clear
# - GET  /api/v1/auth/me:        requires auth (get_current_principal)
router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Returns tokens plus a profile summary on success. On failure returns
    success=false and a message, still at HTTP 200.
    """
    verifier: CredentialVerifier = request.app.state.verifier
    result = verifier.login(body.username, body.password)

    if not result.success:
        if get_settings().expose_login_failure_reason:
            message = LOGIN_FAILURE_MESSAGES[result.failure]
        else:
            message = GENERIC_LOGIN_FAILURE
        content = LoginResponse(success=False, message=message)
    else:
        content = LoginResponse(
            success=True,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            user_info=UserInfo.from_principal(result.principal),
        )
    return _no_store(JSONResponse(status_code=200, content=content.model_dump(by_alias=True, exclude_none=True)))


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access token.

    The new token carries the principal's roles as stored now. The refresh
    token is not rotated.
    """
    verifier: CredentialVerifier = request.app.state.verifier
    result = verifier.refresh(body.refresh_token)
    if not result.ok:
        raise HTTPException(
            status_code=401,
            detail={
                "code": result.error.value,
                "message": "Refresh token is invalid or expired. Log in again.",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    content = RefreshResponse(access_token=result.access_token)
    return _no_store(JSONResponse(content=content.model_dump(by_alias=True)))


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account. New accounts are active unless REGISTRATION_AUTO_ACTIVATE=false."""
    verifier: CredentialVerifier = request.app.state.verifier
    try:
        principal = verifier.register(
            username=body.username,
            password=body.password,
            email=body.email,
            full_name=body.full_name,
            department=body.department,
            position=body.position,
            phone_number=body.phone_number,
            role=body.role,
            active=get_settings().registration_auto_activate,
        )
    except RoleNotAssignableError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "role_not_assignable", "message": str(exc)},
        ) from exc
    except DuplicateAccountError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": str(exc)},
        ) from exc
    return UserResponse.from_principal(principal)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> MessageResponse:
    """Acknowledge logout. Tokens are stateless; the client discards them."""
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return the profile, roles and domain scopes of the caller."""
    return MeResponse.from_principal(principal)
