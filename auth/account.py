"""
auth/account.py -- Account security state machine.

States (derived from SecurityState, never stored):

    INACTIVE         is_active is False (dominates the lock flag)
    ACTIVE_LOCKED    is_active and is_locked
    ACTIVE_UNLOCKED  is_active and not is_locked

Transitions:

    on_login_success   failed_attempts -> 0, last_login_at stamped
    on_login_failure   failed_attempts += 1; reaching max_attempts locks
    lock / unlock      administrative only; unlock also clears the counter
    activate /         toggle is_active without touching the lock
    deactivate

A lock never clears itself. There is no time-based unlock.

The functions mutate the SecurityState in place and return the resulting
AccountState so callers can branch on it. The store persists the mutation;
for login failures it runs the same rule as a single atomic UPDATE (see
UserStore.record_login_failure) so concurrent failures cannot lose an
increment.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from auth.models import SecurityState


class AccountState(str, Enum):
    ACTIVE_UNLOCKED = "active_unlocked"
    ACTIVE_LOCKED = "active_locked"
    INACTIVE = "inactive"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def account_state(sec: SecurityState) -> AccountState:
    if not sec.is_active:
        return AccountState.INACTIVE
    if sec.is_locked:
        return AccountState.ACTIVE_LOCKED
    return AccountState.ACTIVE_UNLOCKED


def on_login_success(sec: SecurityState, now: str | None = None) -> AccountState:
    sec.failed_attempts = 0
    sec.last_login_at = now or _now_iso()
    return account_state(sec)


def on_login_failure(sec: SecurityState, max_attempts: int) -> AccountState:
    """Count a failed login and lock once the threshold is reached."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    sec.failed_attempts += 1
    if sec.failed_attempts >= max_attempts and not sec.is_locked:
        sec.is_locked = True
        sec.locked_at = _now_iso()
    return account_state(sec)


def lock(sec: SecurityState) -> AccountState:
    if not sec.is_locked:
        sec.is_locked = True
        sec.locked_at = _now_iso()
    return account_state(sec)


def unlock(sec: SecurityState) -> AccountState:
    sec.is_locked = False
    sec.locked_at = None
    sec.failed_attempts = 0
    return account_state(sec)


def activate(sec: SecurityState) -> AccountState:
    sec.is_active = True
    return account_state(sec)


def deactivate(sec: SecurityState) -> AccountState:
    sec.is_active = False
    return account_state(sec)
