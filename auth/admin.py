"""
auth/admin.py -- Administrative account lifecycle transitions.

Every transition resolves the account by email first (NotFoundError if
absent) and refuses to act on an account already in the target state
(ConflictError). The state check and the write are one conditional UPDATE
of the affected columns only, so counters and locks written by concurrent
logins survive unrelated transitions. All transitions except get_status
stamp updated_at.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Optional

from auth.exceptions import ConflictError, NotFoundError
from auth.models import Account, AccountStatus
from auth.store import UserStore
from core.clock import Clock, utcnow

logger = logging.getLogger("localbite.auth.admin")


class AccountAdministration:
    def __init__(self, store: UserStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    def _load(self, email: str) -> Account:
        account = self._store.get_by_email(email)
        if account is None:
            raise NotFoundError(f"User not found: {email}")
        return account

    def lock(self, email: str, reason: Optional[str] = None) -> str:
        logger.info("Admin attempting to lock account: %s - Reason: %s", email, reason)
        self._load(email)
        if not self._store.set_locked(email, True, self._clock()):
            raise ConflictError("Account is already locked")
        logger.warning("Account locked by admin: %s - Reason: %s", email, reason)
        return "Account locked successfully"

    def unlock(self, email: str) -> str:
        logger.info("Admin attempting to unlock account: %s", email)
        self._load(email)
        if not self._store.set_locked(email, False, self._clock()):
            raise ConflictError("Account is not locked")
        logger.info("Account unlocked by admin: %s", email)
        return "Account unlocked successfully"

    def enable(self, email: str) -> str:
        logger.info("Admin attempting to enable account: %s", email)
        self._load(email)
        if not self._store.set_enabled(email, True, self._clock()):
            raise ConflictError("Account is already enabled")
        logger.info("Account enabled by admin: %s", email)
        return "Account enabled successfully"

    def disable(self, email: str, reason: Optional[str] = None) -> str:
        logger.info("Admin attempting to disable account: %s - Reason: %s", email, reason)
        self._load(email)
        if not self._store.set_enabled(email, False, self._clock()):
            raise ConflictError("Account is already disabled")
        logger.warning("Account disabled by admin: %s - Reason: %s", email, reason)
        return "Account disabled successfully"

    def reset_failed_attempts(self, email: str) -> int:
        """Zero the counter unconditionally and return its previous value."""
        logger.info("Admin resetting failed login attempts for: %s", email)
        self._load(email)
        previous = self._store.reset_failed_attempts(email, self._clock())
        logger.info("Failed login attempts reset for %s: %d -> 0", email, previous)
        return previous

    def get_status(self, email: str) -> AccountStatus:
        logger.info("Admin checking account status for: %s", email)
        account = self._load(email)
        return AccountStatus(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            email_verified=account.email_verified,
            account_locked=account.account_locked,
            enabled=account.enabled,
            failed_login_attempts=account.failed_login_attempts,
            last_login=account.last_login,
            created_at=account.created_at,
            updated_at=account.updated_at,
            provider=account.provider.value,
            roles=account.authorities,
        )
