"""
auth/errors.py -- Failure taxonomy for authentication, tokens, and authorization.

Failures that are part of normal control flow (a wrong password, an expired
token) are modelled as enum members carried inside result objects, never as
exceptions. Exceptions are reserved for programming or data errors that the
caller must not ignore (an invalid role name at creation time, a missing
role during assignment).

Each enum value doubles as the machine-readable error code returned by the
API layer, so the string values are part of the HTTP contract.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class AuthenticationFailure(str, Enum):
    """Why a login (or refresh re-check) was refused."""

    NO_SUCH_USER = "no_such_user"
    BAD_CREDENTIAL = "bad_credential"
    ACCOUNT_INACTIVE = "account_inactive"
    ACCOUNT_LOCKED = "account_locked"


class TokenError(str, Enum):
    """Why a bearer token could not be trusted."""

    EXPIRED = "token_expired"
    MALFORMED = "token_malformed"
    BAD_SIGNATURE = "token_bad_signature"
    UNSUPPORTED_TYPE = "token_unsupported_type"
    EMPTY = "token_empty"


class AuthorizationFailure(str, Enum):
    INSUFFICIENT_ROLE = "insufficient_role"


# User-facing login messages. The specific reason is shown only when
# Settings.expose_login_failure_reason is enabled; otherwise every failure
# collapses to GENERIC_LOGIN_FAILURE.
LOGIN_FAILURE_MESSAGES: dict[AuthenticationFailure, str] = {
    AuthenticationFailure.NO_SUCH_USER: "No account exists with that username.",
    AuthenticationFailure.BAD_CREDENTIAL: "The password is incorrect.",
    AuthenticationFailure.ACCOUNT_INACTIVE: "This account is inactive. Contact an administrator.",
    AuthenticationFailure.ACCOUNT_LOCKED: "This account is locked. Contact an administrator.",
}

GENERIC_LOGIN_FAILURE = "Invalid username or password."


class InvalidRoleNameError(ValueError):
    """Raised when a role name does not match the ROLE_ namespace pattern."""


class RoleNotFoundError(LookupError):
    """Raised when a role referenced by name or ID does not exist."""


class DuplicateAccountError(ValueError):
    """Raised at registration when the username or email is already taken.

    field names which one collided ("username" or "email").
    """

    def __init__(self, field: str) -> None:
        super().__init__(f"An account with that {field} already exists.")
        self.field = field


class RoleNotAssignableError(ValueError):
    """Raised when registration asks for a role users cannot grant themselves."""
