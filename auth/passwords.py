"""
auth/passwords.py -- bcrypt password hashing with timing equalization.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage is simpler and has no
compatibility shim.

PasswordHasher is built once at startup with the configured cost factor.
It precomputes a dummy hash at the same cost so verify_dummy() takes as long
as a real comparison; the credential verifier calls it for unknown
usernames so response time does not reveal whether a username exists.
"""

from __future__ import annotations

import logging

import bcrypt

logger = logging.getLogger("portal.auth")

DEFAULT_ROUNDS = 12


class PasswordHasher:
    """Salted, deliberately slow one-way hashing (bcrypt)."""

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self.rounds = rounds
        self._dummy_hash = self.hash("portal_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the plaintext password.

        bcrypt raises ValueError for input longer than 72 bytes once
        UTF-8 encoded. The request models reject such passwords with a 422
        before they get here.
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext matches the hash. Any error counts as a mismatch."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            logger.warning("Stored password hash could not be parsed")
            return False

    def verify_dummy(self, plain: str) -> None:
        """Burn one comparison's worth of CPU against the dummy hash."""
        self.verify(plain, self._dummy_hash)
