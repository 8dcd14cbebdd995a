"""
auth/policy.py -- Access policy table: URL patterns -> required authority.

The table is an ordered, immutable tuple of AccessRule. evaluate() walks it
top to bottom and the FIRST rule whose pattern matches the path decides.
Put specific patterns before broad ones.

Patterns are Ant-style:
    *     any characters within one path segment
    **    any number of segments (including none)
A pattern ending in "/**" also matches its bare prefix, so
"/api/v1/users/**" covers "/api/v1/users" itself.

Requirements:
    PERMIT_ALL       anyone, authenticated or not
    AUTHENTICATED    any verified identity
    roles={...}      an identity holding at least one of the roles

Paths no rule matches are permitted for authenticated identities. For
anonymous requests the outcome is the table's `unmatched` verdict, which the
application sets from Settings.policy_unmatched_default ("deny" by default).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from auth.models import Identity
from auth.roles import has_any_role, normalize_role_name


class Verdict(str, Enum):
    PERMIT = "permit"
    UNAUTHENTICATED = "unauthenticated"  # HTTP 401
    FORBIDDEN = "forbidden"  # HTTP 403


class Requirement(str, Enum):
    PERMIT_ALL = "permit_all"
    AUTHENTICATED = "authenticated"
    ANY_ROLE = "any_role"


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate an Ant-style path pattern to an anchored regex."""
    if pattern.endswith("/**"):
        return re.compile("^" + _translate(pattern[:-3]) + "(?:/.*)?$")
    return re.compile("^" + _translate(pattern) + "$")


def _translate(pattern: str) -> str:
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return "".join(out)


@dataclass(frozen=True)
class AccessRule:
    """One row of the policy table.

    methods restricts the rule to those HTTP methods; empty means any.
    """

    pattern: str
    requirement: Requirement
    roles: frozenset[str] = frozenset()
    methods: frozenset[str] = frozenset()
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.requirement is Requirement.ANY_ROLE and not self.roles:
            raise ValueError(f"Rule {self.pattern!r} requires roles but lists none")
        object.__setattr__(self, "roles", frozenset(normalize_role_name(r) for r in self.roles))
        object.__setattr__(self, "methods", frozenset(m.upper() for m in self.methods))
        object.__setattr__(self, "_regex", compile_pattern(self.pattern))

    @classmethod
    def permit_all(cls, pattern: str, *methods: str) -> "AccessRule":
        return cls(pattern, Requirement.PERMIT_ALL, methods=frozenset(methods))

    @classmethod
    def authenticated(cls, pattern: str, *methods: str) -> "AccessRule":
        return cls(pattern, Requirement.AUTHENTICATED, methods=frozenset(methods))

    @classmethod
    def any_role(cls, pattern: str, *roles: str, methods: tuple[str, ...] = ()) -> "AccessRule":
        return cls(pattern, Requirement.ANY_ROLE, roles=frozenset(roles), methods=frozenset(methods))

    def matches(self, path: str, method: str | None = None) -> bool:
        if self.methods and method is not None and method.upper() not in self.methods:
            return False
        return self._regex.match(path) is not None

    def decide(self, identity: Identity | None) -> Verdict:
        if self.requirement is Requirement.PERMIT_ALL:
            return Verdict.PERMIT
        if identity is None:
            return Verdict.UNAUTHENTICATED
        if self.requirement is Requirement.AUTHENTICATED:
            return Verdict.PERMIT
        return Verdict.PERMIT if has_any_role(identity.roles, self.roles) else Verdict.FORBIDDEN


class AccessPolicy:
    """Immutable ordered rule table. Build once at startup."""

    def __init__(self, rules: tuple[AccessRule, ...] | list[AccessRule], unmatched: str = "deny") -> None:
        if unmatched not in ("deny", "permit"):
            raise ValueError("unmatched must be 'deny' or 'permit'")
        self._rules = tuple(rules)
        self.unmatched = unmatched

    @property
    def rules(self) -> tuple[AccessRule, ...]:
        return self._rules

    def match(self, path: str, method: str | None = None) -> AccessRule | None:
        for rule in self._rules:
            if rule.matches(path, method):
                return rule
        return None

    def evaluate(self, path: str, identity: Identity | None, method: str | None = None) -> Verdict:
        rule = self.match(path, method)
        if rule is not None:
            return rule.decide(identity)
        if identity is not None or self.unmatched == "permit":
            return Verdict.PERMIT
        return Verdict.UNAUTHENTICATED


# ---------------------------------------------------------------------------
# Portal table
# ---------------------------------------------------------------------------

_ADMIN = "ROLE_ADMIN"
_SUPPORT = "ROLE_BUSINESS_SUPPORT"


def default_rules() -> tuple[AccessRule, ...]:
    """The portal's access table.

    Mirrors the route layout: public auth endpoints and docs first, then the
    administrative APIs, then "everything else under /api needs a login".
    Business support may read roles but only administrators change them.
    The availability checks are public for the registration form, and any
    signed-in user may reach PUT /users/{id}; the route itself limits that to
    their own profile.
    """
    return (
        AccessRule.permit_all("/api/v1/health"),
        AccessRule.permit_all("/api/v1/auth/login"),
        AccessRule.permit_all("/api/v1/auth/refresh"),
        AccessRule.permit_all("/api/v1/auth/register"),
        AccessRule.permit_all("/api/v1/auth/logout"),
        AccessRule.permit_all("/docs/**"),
        AccessRule.permit_all("/redoc"),
        AccessRule.permit_all("/openapi.json"),
        AccessRule.any_role("/api/v1/roles/**", _ADMIN, _SUPPORT, methods=("GET",)),
        AccessRule.any_role("/api/v1/roles/**", _ADMIN),
        AccessRule.permit_all("/api/v1/users/check-username", "GET"),
        AccessRule.permit_all("/api/v1/users/check-email", "GET"),
        AccessRule.authenticated("/api/v1/users/*", "PUT"),
        AccessRule.any_role("/api/v1/users/**", _ADMIN, _SUPPORT),
        AccessRule.authenticated("/api/**"),
    )


def default_policy(unmatched: str = "deny") -> AccessPolicy:
    return AccessPolicy(default_rules(), unmatched=unmatched)
