"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work: state transitions live in auth/account.py, role comparisons in
auth/roles.py.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Role:
    """A named authority level.

    name is the namespaced identifier ("ROLE_ADMIN"). Rows written before the
    ROLE_ namespace was enforced may lack the prefix; the token codec
    normalizes on the way out, so consumers never see the bare form.

    priority: lower number = more authority. None means "unranked" and sorts
    below every ranked role.

    is_system marks catalog roles seeded at startup. They cannot be renamed
    or deleted through the store.
    """

    name: str
    display_name: str = ""
    priority: int | None = 100
    description: str = ""
    id: int | None = None
    is_system: bool = False
    is_active: bool = True
    created_at: str | None = None


@dataclass
class SecurityState:
    """Per-principal login security state. Mutated only via auth/account.py."""

    is_active: bool = True
    is_locked: bool = False
    is_credential_expired: bool = False
    failed_attempts: int = 0
    locked_at: str | None = None  # ISO 8601
    last_login_at: str | None = None  # ISO 8601 of last successful login


@dataclass
class Principal:
    """An identity that can log in to the portal.

    username and email are both unique. hashed_password is a bcrypt hash and
    is never returned by the API. roles is loaded from the user_roles join
    table by the store; callers must not mutate it directly -- use
    UserStore.assign_role / revoke_role / set_user_roles.
    """

    username: str
    email: str
    hashed_password: str
    full_name: str = ""
    department: str | None = None
    position: str | None = None
    phone_number: str | None = None
    id: int | None = None
    security: SecurityState = field(default_factory=SecurityState)
    roles: list[Role] = field(default_factory=list)
    created_at: str | None = None


@dataclass(frozen=True)
class Identity:
    """The request-scoped identity attached by the authorization filter.

    Built purely from a verified access token -- no store lookup -- so it is
    cheap enough to construct on every request.
    """

    subject: str
    roles: frozenset[str]
    display_name: str = ""
    email: str = ""
    department: str | None = None
