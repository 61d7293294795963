"""
auth/verification.py -- Email verification tokens and dispatch.

Flow:
  1. register() calls send_verification_email(account).
  2. Outstanding tokens for the account are invalidated and a fresh
     32-hex-character token is stored with a 24 hour lifetime.
  3. The EmailDispatcher is handed (address, name, token). Delivery is not
     our concern: LoggingEmailDispatcher writes the link to the log,
     BackgroundEmailDispatcher moves any dispatcher onto a thread pool so the
     caller never waits on, or fails because of, delivery.
  4. verify_email(token) marks the token used and the account verified.
     Unknown, used, expired and blank tokens all return False.

Enumeration:
  resend_verification_email() answers silently for unknown and already
  verified addresses. Only the server log knows which case happened.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Optional, Protocol

from auth.exceptions import NotFoundError
from auth.models import Account, VerificationToken
from auth.store import UserStore
from core.clock import Clock, utcnow

logger = logging.getLogger("localbite.auth.verification")

TOKEN_TTL = timedelta(hours=24)


class EmailDispatcher(Protocol):
    def send_verification_email(self, address: str, name: Optional[str], token: str) -> None: ...


class LoggingEmailDispatcher:
    """Writes the verification link to the log instead of sending mail."""

    def __init__(self, frontend_url: str) -> None:
        self._frontend_url = frontend_url.rstrip("/")

    def send_verification_email(self, address: str, name: Optional[str], token: str) -> None:
        link = f"{self._frontend_url}/auth/verify-email?token={token}"
        logger.info("Verification email for %s <%s>: %s", name or "user", address, link)


class BackgroundEmailDispatcher:
    """Runs a delegate dispatcher on a small thread pool.

    Delivery errors are logged from the worker thread and never reach the
    caller.
    """

    def __init__(self, delegate: EmailDispatcher, max_workers: int = 2) -> None:
        self._delegate = delegate
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="email")

    def send_verification_email(self, address: str, name: Optional[str], token: str) -> None:
        future = self._executor.submit(self._delegate.send_verification_email, address, name, token)
        future.add_done_callback(lambda f: self._log_failure(f, address))

    @staticmethod
    def _log_failure(future, address: str) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to deliver verification email to %s: %s", address, exc)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class VerificationService:
    def __init__(self, store: UserStore, dispatcher: EmailDispatcher, clock: Clock = utcnow) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock

    def send_verification_email(self, account: Account) -> Optional[str]:
        """Issue a fresh token and dispatch it. Returns the token, or None if already verified."""
        if account.email_verified:
            logger.info("User %s is already verified, skipping verification email", account.email)
            return None
        now = self._clock()
        self._store.invalidate_verification_tokens(account.id)
        token = secrets.token_hex(16)
        self._store.create_verification_token(
            VerificationToken(user_id=account.id, token=token, expires_at=now + TOKEN_TTL, created_at=now)
        )
        self._dispatcher.send_verification_email(account.email, account.first_name, token)
        logger.info("Verification email queued for: %s", account.email)
        return token

    def verify_email(self, token: Optional[str]) -> bool:
        if not token or not token.strip():
            logger.warning("Verification attempt with empty token")
            return False
        record = self._store.get_verification_token(token.strip())
        if record is None:
            logger.warning("Invalid verification token")
            return False
        if record.used:
            logger.warning("Already used verification token for user id %s", record.user_id)
            return False
        if record.expires_at <= self._clock():
            logger.warning("Expired verification token for user id %s", record.user_id)
            return False
        if not self._store.mark_verification_token_used(record.id):
            # Lost a race with a concurrent verification of the same token
            return False
        account = self._store.get_by_id(record.user_id)
        if account is None:
            return False
        self._store.mark_email_verified(account.id, self._clock())
        logger.info("Email verified successfully for user: %s", account.email)
        return True

    def resend_verification_email(self, email: str) -> None:
        account = self._store.get_by_email(email)
        if account is None:
            logger.warning("Verification resend requested for unknown email: %s", email)
            return
        if account.email_verified:
            logger.info("Verification resend requested for already verified email: %s", email)
            return
        self.send_verification_email(account)
        logger.info("Verification email resent to: %s", email)

    def manually_verify_email(self, email: str) -> None:
        account = self._store.get_by_email(email)
        if account is None:
            raise NotFoundError(f"User not found with email: {email}")
        if account.email_verified:
            logger.info("User %s is already verified", email)
            return
        self._store.mark_email_verified(account.id, self._clock())
        self._store.invalidate_verification_tokens(account.id)
        logger.info("Manually verified email for user: %s", email)

    def is_email_verified(self, email: str) -> bool:
        account = self._store.get_by_email(email)
        return account is not None and account.email_verified
