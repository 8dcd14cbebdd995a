"""
auth/roles.py -- Role hierarchy: naming rules, priority comparison, domain scopes.

Priority model:
  Lower integer = more authority. ROLE_ADMIN (1) outranks ROLE_EMPLOYEE (100).
  A role with no priority is treated as the lowest possible authority, and
  ties are broken by role name so highest_authority() is deterministic.

Domain scopes:
  The portal splits case work into two business areas, "type 1" and
  "type 4". A role either covers both (the *_ALL variants and ROLE_ADMIN) or
  exactly one (*_TYPE1 / *_TYPE4). Scope membership is read from
  ROLE_CATALOG, an explicit table built once at import, instead of matching
  substrings of role names at call sites.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from auth.errors import InvalidRoleNameError
from auth.models import Role

ROLE_PREFIX = "ROLE_"
ROLE_NAME_PATTERN = re.compile(r"^ROLE_[A-Z][A-Z0-9_]*$")

MIN_PRIORITY = 1
MAX_PRIORITY = 999

SCOPE_TYPE1 = "type1"
SCOPE_TYPE4 = "type4"

DEFAULT_ROLE = "ROLE_EMPLOYEE"

_UNRANKED = sys.maxsize


# ---------------------------------------------------------------------------
# Capability catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleCapability:
    """Static metadata for one catalog role."""

    name: str
    display_name: str
    description: str
    priority: int
    scopes: frozenset[str] = frozenset()
    self_assignable: bool = False


_BOTH = frozenset({SCOPE_TYPE1, SCOPE_TYPE4})
_T1 = frozenset({SCOPE_TYPE1})
_T4 = frozenset({SCOPE_TYPE4})

_CATALOG_ENTRIES = (
    RoleCapability("ROLE_ADMIN", "Administrator", "Full access to every portal function", 1, _BOTH),
    RoleCapability("ROLE_BUSINESS_SUPPORT", "Business Support", "User and role administration", 5),
    RoleCapability("ROLE_EXECUTIVE_ALL", "Executive (Type 1/4)", "Executive, both business areas", 10, _BOTH),
    RoleCapability("ROLE_EXECUTIVE_TYPE1", "Executive (Type 1)", "Executive, type 1 business area", 11, _T1),
    RoleCapability("ROLE_EXECUTIVE_TYPE4", "Executive (Type 4)", "Executive, type 4 business area", 12, _T4),
    RoleCapability("ROLE_TEAM_LEADER_ALL", "Team Leader (Type 1/4)", "Team leader, both business areas", 20, _BOTH),
    RoleCapability("ROLE_TEAM_LEADER_TYPE1", "Team Leader (Type 1)", "Team leader, type 1 business area", 21, _T1),
    RoleCapability("ROLE_TEAM_LEADER_TYPE4", "Team Leader (Type 4)", "Team leader, type 4 business area", 22, _T4),
    RoleCapability(
        "ROLE_INVESTIGATOR_ALL", "Investigator (Type 1/4)", "Investigator, both business areas", 30, _BOTH, True
    ),
    RoleCapability(
        "ROLE_INVESTIGATOR_TYPE1", "Investigator (Type 1)", "Investigator, type 1 business area", 31, _T1, True
    ),
    RoleCapability(
        "ROLE_INVESTIGATOR_TYPE4", "Investigator (Type 4)", "Investigator, type 4 business area", 32, _T4, True
    ),
    RoleCapability("ROLE_EMPLOYEE", "Employee", "Basic portal access", 100, frozenset(), True),
)

ROLE_CATALOG: Mapping[str, RoleCapability] = MappingProxyType({c.name: c for c in _CATALOG_ENTRIES})


def catalog_roles() -> list[Role]:
    """Return fresh Role objects for every catalog entry, ready for seeding."""
    return [
        Role(
            name=c.name,
            display_name=c.display_name,
            description=c.description,
            priority=c.priority,
            is_system=True,
        )
        for c in _CATALOG_ENTRIES
    ]


def is_self_assignable(name: str) -> bool:
    cap = ROLE_CATALOG.get(normalize_role_name(name))
    return cap is not None and cap.self_assignable


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def normalize_role_name(name: str) -> str:
    """Return name with the ROLE_ prefix, adding it if missing.

    Only the namespace is normalized; the rest of the name is left as-is so
    a malformed name stays detectably malformed.
    """
    name = name.strip()
    return name if name.startswith(ROLE_PREFIX) else f"{ROLE_PREFIX}{name}"


def validate_role_name(name: str) -> str:
    """Return name unchanged if it is a valid namespaced role name.

    Raises InvalidRoleNameError for a missing prefix, lowercase characters,
    or anything outside [A-Z0-9_].
    """
    if not ROLE_NAME_PATTERN.match(name or ""):
        raise InvalidRoleNameError(
            f"Role name {name!r} must start with {ROLE_PREFIX!r} followed by "
            "an uppercase letter and only A-Z, 0-9 or underscore."
        )
    return name


def validate_priority(priority: int | None) -> int:
    if priority is None or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"Role priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}.")
    return priority


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


def authority_key(role: Role) -> tuple[int, str]:
    """Sort key: (priority, normalized name). Unranked roles sort last."""
    rank = role.priority if role.priority is not None else _UNRANKED
    return rank, normalize_role_name(role.name)


def sort_by_authority(roles: Iterable[Role]) -> list[Role]:
    return sorted(roles, key=authority_key)


def highest_authority(roles: Iterable[Role]) -> Role | None:
    """Return the role with the most authority, or None for an empty set."""
    return min(roles, key=authority_key, default=None)


def has_any_role(held: Iterable[Role | str], required: Iterable[str]) -> bool:
    """True if any held role matches any required role name.

    Both sides are namespace-normalized, so "ADMIN" and "ROLE_ADMIN" compare
    equal. An empty required set never matches.
    """
    required_names = {normalize_role_name(r) for r in required}
    return any(_role_name(r) in required_names for r in held)


def role_scopes(held: Iterable[Role | str]) -> frozenset[str]:
    """Union of domain scopes granted by the held roles."""
    scopes: set[str] = set()
    for r in held:
        cap = ROLE_CATALOG.get(_role_name(r))
        if cap is not None:
            scopes |= cap.scopes
    return frozenset(scopes)


def can_access_type1(held: Iterable[Role | str]) -> bool:
    return SCOPE_TYPE1 in role_scopes(held)


def can_access_type4(held: Iterable[Role | str]) -> bool:
    return SCOPE_TYPE4 in role_scopes(held)


def _role_name(role: Role | str) -> str:
    return normalize_role_name(role.name if isinstance(role, Role) else role)
