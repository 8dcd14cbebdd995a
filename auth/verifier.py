"""
auth/verifier.py -- Credential verification: login, refresh, registration.

CredentialVerifier orchestrates the store, the password hasher, the account
state machine and the token codec. It is built once in the FastAPI lifespan
with every collaborator injected, and holds no per-request state.

Login order (each step short-circuits):
  1. Look up the principal.        absent    -> NO_SUCH_USER
  2. bcrypt compare.               mismatch  -> record failure, BAD_CREDENTIAL
  3. Account state.                inactive  -> ACCOUNT_INACTIVE
                                   locked    -> ACCOUNT_LOCKED
  4. Record success, mint access + refresh tokens.

Security:
  An unknown username still pays for one bcrypt comparison (against the
  hasher's dummy hash) so response time does not reveal whether it exists.

  The failure increment is persisted atomically by the store. If that write
  raises, the login still reports BAD_CREDENTIAL -- a storage error can never
  turn a wrong password into a success.

  Refresh re-reads the principal, so the new access token carries the roles
  and state held *now*, not those at the time the refresh token was issued.
  A deactivated or locked principal cannot refresh.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from auth.account import AccountState, account_state, on_login_success
from auth.errors import (
    AuthenticationFailure,
    DuplicateAccountError,
    RoleNotAssignableError,
    TokenError,
)
from auth.models import Principal, SecurityState
from auth.passwords import PasswordHasher
from auth.roles import DEFAULT_ROLE, is_self_assignable, normalize_role_name
from auth.store import UserStore
from auth.tokens import REFRESH, TokenCodec

logger = logging.getLogger("portal.auth")


@dataclass(frozen=True)
class LoginResult:
    """Outcome of CredentialVerifier.login(). Tokens are set only on success."""

    success: bool
    principal: Principal | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    failure: AuthenticationFailure | None = None


@dataclass(frozen=True)
class RefreshResult:
    access_token: str | None = None
    error: TokenError | AuthenticationFailure | None = None

    @property
    def ok(self) -> bool:
        return self.access_token is not None


class CredentialVerifier:
    """Turns credentials into tokens, and refresh tokens into access tokens."""

    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        hasher: PasswordHasher,
        max_attempts: int = 5,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> LoginResult:
        principal = self.store.get_by_username(username)
        if principal is None:
            self.hasher.verify_dummy(password)
            return self._fail(username, AuthenticationFailure.NO_SUCH_USER)

        if not self.hasher.verify(password, principal.hashed_password):
            self._record_failure(principal)
            return self._fail(username, AuthenticationFailure.BAD_CREDENTIAL)

        state = account_state(principal.security)
        if state is AccountState.INACTIVE:
            return self._fail(username, AuthenticationFailure.ACCOUNT_INACTIVE)
        if state is AccountState.ACTIVE_LOCKED:
            return self._fail(username, AuthenticationFailure.ACCOUNT_LOCKED)

        on_login_success(principal.security)
        self.store.record_login_success(principal.id, principal.security.last_login_at)
        logger.info("Login succeeded for %s", username)
        return LoginResult(
            success=True,
            principal=principal,
            access_token=self.codec.mint_access(principal),
            refresh_token=self.codec.mint_refresh(principal.username),
        )

    def _record_failure(self, principal: Principal) -> None:
        try:
            sec = self.store.record_login_failure(principal.id, self.max_attempts)
        except Exception:
            # Whatever went wrong, the password was still wrong.
            logger.exception("Could not persist failed login for %s", principal.username)
            return
        if sec is not None:
            principal.security = sec
            if sec.is_locked and sec.failed_attempts == self.max_attempts:
                logger.warning("Account %s locked after %d failed logins", principal.username, sec.failed_attempts)

    @staticmethod
    def _fail(username: str, reason: AuthenticationFailure) -> LoginResult:
        logger.info("Login failed for %s: %s", username, reason.value)
        return LoginResult(success=False, failure=reason)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str | None) -> RefreshResult:
        """Mint a new access token from a valid refresh token.

        The refresh token itself is returned to nobody and is not rotated; it
        stays usable until it expires.
        """
        result = self.codec.parse_and_verify(refresh_token)
        if not result.ok:
            logger.debug("Refresh rejected: %s", result.error.value)
            return RefreshResult(error=result.error)
        if result.claims.token_type != REFRESH:
            return RefreshResult(error=TokenError.UNSUPPORTED_TYPE)

        principal = self.store.get_by_username(result.claims.subject)
        if principal is None:
            return RefreshResult(error=AuthenticationFailure.NO_SUCH_USER)
        state = account_state(principal.security)
        if state is AccountState.INACTIVE:
            return RefreshResult(error=AuthenticationFailure.ACCOUNT_INACTIVE)
        if state is AccountState.ACTIVE_LOCKED:
            return RefreshResult(error=AuthenticationFailure.ACCOUNT_LOCKED)
        return RefreshResult(access_token=self.codec.mint_access(principal))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        password: str,
        email: str,
        full_name: str = "",
        department: str | None = None,
        position: str | None = None,
        phone_number: str | None = None,
        role: str | None = None,
        active: bool = True,
    ) -> Principal:
        """Create a self-registered principal holding one self-assignable role.

        Raises RoleNotAssignableError if role is not open to self-registration
        and DuplicateAccountError if the username or email is taken.
        """
        role_name = normalize_role_name(role) if role else DEFAULT_ROLE
        if not is_self_assignable(role_name):
            raise RoleNotAssignableError(f"{role_name} cannot be chosen at registration.")
        return self.create_principal(
            username,
            password,
            email,
            roles=[role_name],
            full_name=full_name,
            department=department,
            position=position,
            phone_number=phone_number,
            active=active,
        )

    def create_principal(
        self,
        username: str,
        password: str,
        email: str,
        roles: list[str],
        full_name: str = "",
        department: str | None = None,
        position: str | None = None,
        phone_number: str | None = None,
        active: bool = True,
    ) -> Principal:
        """Hash the password and persist a principal with the given roles.

        No self-assignability check: callers are registration (which checks
        first) and the startup administrator bootstrap.
        """
        if self.store.username_exists(username):
            raise DuplicateAccountError("username")
        if self.store.email_exists(email):
            raise DuplicateAccountError("email")

        principal = Principal(
            username=username,
            email=email,
            hashed_password=self.hasher.hash(password),
            full_name=full_name,
            department=department,
            position=position,
            phone_number=phone_number,
            security=SecurityState(is_active=active),
        )
        try:
            user_id = self.store.create_user(principal, role_names=roles)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same name.
            raise DuplicateAccountError("username or email") from exc
        logger.info("Created principal %s with roles %s", username, ",".join(roles))
        return self.store.get_by_id(user_id)
