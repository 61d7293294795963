"""
auth/passwords.py -- bcrypt credential comparator.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage is simpler and has no
compatibility shim.

Bcrypt is the right choice for low-entropy secrets (passwords): the cost
factor makes brute-force expensive and every hash carries its own salt.
The cost is configurable (Settings.bcrypt_rounds) so tests can run at the
minimum of 4 rounds.
"""

from __future__ import annotations

import bcrypt


class BcryptHasher:
    """hash(plain) -> hash, matches(plain, hash) -> bool."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, plain: str) -> str:
        """Return a salted bcrypt hash of the given plaintext password.

        Passwords longer than 72 bytes are truncated by bcrypt (a known bcrypt
        limitation). The password policy caps length at the API layer, so in
        practice inputs stay well below that.
        """
        return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def matches(self, plain: str, hashed: str | None) -> bool:
        """Return True if the plaintext password matches the bcrypt hash."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False
