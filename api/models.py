"""
API request and response models for the portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format: JSON keys are camelCase (accessToken, userInfo, fullName) to
match the portal's web client. Python attributes stay snake_case; the
alias generator converts on the way in and out, and populate_by_name lets
tests and internal callers build models with snake_case names.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Principal, Role
from auth.roles import can_access_type1, can_access_type4, highest_authority, normalize_role_name

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,50}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt refuses input past 72 bytes. The character cap below is only a first
# cut; multibyte text can exceed the byte limit, so the password
# validators check the encoded length.
MAX_PASSWORD_LENGTH = 72
MAX_PASSWORD_BYTES = 72


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return value


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(_CamelModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class RefreshRequest(_CamelModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1)


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register.

    role is optional; when omitted the account gets ROLE_EMPLOYEE. Only
    self-assignable catalog roles are accepted (checked by the verifier).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=MAX_PASSWORD_LENGTH)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=100)
    full_name: str = Field(min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, max_length=100)
    position: Optional[str] = Field(default=None, max_length=50)
    phone_number: Optional[str] = Field(default=None, max_length=20)
    role: Optional[str] = Field(default=None, max_length=50)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserInfo(_FrozenCamelModel):
    """Profile summary embedded in a successful login response."""

    username: str
    email: str
    full_name: str
    department: Optional[str] = None
    roles: list[str]

    @classmethod
    def from_principal(cls, principal: Principal) -> "UserInfo":
        return cls(
            username=principal.username,
            email=principal.email,
            full_name=principal.full_name,
            department=principal.department,
            roles=_role_names(_active(principal.roles)),
        )


class LoginResponse(_FrozenCamelModel):
    """Response for POST /api/v1/auth/login.

    Login failures are reported at HTTP 200 with success=false and a message,
    so only one of (tokens + user_info) or message is populated.
    """

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user_info: Optional[UserInfo] = None
    message: Optional[str] = None


class RefreshResponse(_FrozenCamelModel):
    access_token: str


class MeResponse(_FrozenCamelModel):
    """Response for GET /api/v1/auth/me."""

    username: str
    email: str
    full_name: str
    department: Optional[str] = None
    position: Optional[str] = None
    roles: list[str]
    primary_role: Optional[str] = None
    can_access_type1: bool
    can_access_type4: bool

    @classmethod
    def from_principal(cls, principal: Principal) -> "MeResponse":
        active = _active(principal.roles)
        primary = highest_authority(active)
        return cls(
            username=principal.username,
            email=principal.email,
            full_name=principal.full_name,
            department=principal.department,
            position=principal.position,
            roles=_role_names(active),
            primary_role=normalize_role_name(primary.name) if primary else None,
            can_access_type1=can_access_type1(active),
            can_access_type4=can_access_type4(active),
        )


# ---------------------------------------------------------------------------
# Users (admin)
# ---------------------------------------------------------------------------


class UserResponse(_FrozenCamelModel):
    """One principal as seen by administrators. Never includes the password hash."""

    id: int
    username: str
    email: str
    full_name: str
    department: Optional[str] = None
    position: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool
    is_locked: bool
    is_credential_expired: bool
    failed_attempts: int
    locked_at: Optional[str] = None
    last_login_at: Optional[str] = None
    created_at: str
    roles: list[str]

    @classmethod
    def from_principal(cls, principal: Principal) -> "UserResponse":
        sec = principal.security
        return cls(
            id=principal.id,
            username=principal.username,
            email=principal.email,
            full_name=principal.full_name,
            department=principal.department,
            position=principal.position,
            phone_number=principal.phone_number,
            is_active=sec.is_active,
            is_locked=sec.is_locked,
            is_credential_expired=sec.is_credential_expired,
            failed_attempts=sec.failed_attempts,
            locked_at=sec.locked_at,
            last_login_at=sec.last_login_at,
            created_at=principal.created_at or "",
            roles=_role_names(principal.roles),
        )


class UserRolesUpdate(_CamelModel):
    """Request body for PUT /api/v1/users/{id}/roles. Replaces the whole set."""

    roles: list[str] = Field(min_length=1, max_length=20)


class UserCreate(_CamelModel):
    """Request body for POST /api/v1/users.

    Unlike registration, any catalog role may be given; only ROLE_ADMIN
    holders may create another administrator.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=MAX_PASSWORD_LENGTH)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=100)
    full_name: str = Field(min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, max_length=100)
    position: Optional[str] = Field(default=None, max_length=50)
    phone_number: Optional[str] = Field(default=None, max_length=20)
    roles: list[str] = Field(default_factory=lambda: ["ROLE_EMPLOYEE"], min_length=1, max_length=20)
    is_active: bool = True

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class UserUpdate(_CamelModel):
    """Request body for PUT /api/v1/users/{id}. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=100)
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, max_length=100)
    position: Optional[str] = Field(default=None, max_length=50)
    phone_number: Optional[str] = Field(default=None, max_length=20)


class UsernameCheckResponse(_FrozenCamelModel):
    username: str
    valid: bool
    available: bool


class EmailCheckResponse(_FrozenCamelModel):
    email: str
    valid: bool
    available: bool


# ---------------------------------------------------------------------------
# Roles (admin)
# ---------------------------------------------------------------------------


class RoleResponse(_FrozenCamelModel):
    id: int
    name: str
    display_name: str
    description: str
    priority: Optional[int] = None
    is_system: bool
    is_active: bool
    created_at: str
    user_count: int = 0

    @classmethod
    def from_role(cls, role: Role, user_count: int = 0) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            priority=role.priority,
            is_system=role.is_system,
            is_active=role.is_active,
            created_at=role.created_at or "",
            user_count=user_count,
        )


class RoleCreate(_CamelModel):
    """Request body for POST /api/v1/roles.

    The name pattern and priority range are enforced by the store (which
    raises InvalidRoleNameError / ValueError) so the rule lives in one place;
    the route maps those to HTTP 400.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=50)
    display_name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    priority: int = 100


class RoleUpdate(_CamelModel):
    """Request body for PATCH /api/v1/roles/{id}. The name cannot change."""

    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    priority: Optional[int] = None


class RoleNameCheckResponse(_FrozenCamelModel):
    name: str
    valid: bool
    available: bool


def _role_names(roles: list[Role]) -> list[str]:
    names: list[str] = []
    for role in roles:
        name = normalize_role_name(role.name)
        if name not in names:
            names.append(name)
    return names


def _active(roles: list[Role]) -> list[Role]:
    """Roles that currently grant authority. Deactivated roles stay assigned but inert."""
    return [r for r in roles if r.is_active]
