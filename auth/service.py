"""
auth/service.py -- Registration, login, refresh and current-user lookup.

Login is a single uniform-cost path:

  1. Load the account by email (may be None).
  2. Pick the hash to verify against: the stored hash if the account exists,
     is eligible (verified, unlocked, enabled) and has a password; otherwise
     a dummy hash computed once at construction.
  3. Run exactly one bcrypt comparison.
  4. Any rejection (unknown email, ineligible, OAuth-only, wrong password)
     raises AuthenticationFailedError with the same fixed message. The real
     reason is logged server-side at WARNING.
  5. Rejections against an existing account increment its failed-attempt
     counter atomically; reaching max_failed_attempts locks the account.

A correct password on an expired account raises PasswordExpiredError
instead of issuing tokens.

Registration never reveals whether an email is taken: a duplicate returns
an empty AuthResult and writes nothing.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.exceptions import (
    AuthenticationFailedError,
    NotFoundError,
    PasswordExpiredError,
    PolicyViolationError,
    ValidationError,
)
from auth.models import (
    ROLE_DESCRIPTIONS,
    SELF_REGISTRATION_ROLES,
    Account,
    AuthProvider,
    AuthResult,
    RegistrationRequest,
    Role,
    RoleName,
    UserSummary,
    to_user_summary,
)
from auth.passwords import BcryptHasher
from auth.policy import PasswordPolicy
from auth.store import UserStore
from auth.tokens import TokenCodec
from auth.verification import VerificationService
from core.clock import Clock, utcnow

logger = logging.getLogger("localbite.auth.service")

_DUMMY_PASSWORD = "dummy-password-for-timing"


class AuthService:
    """Orchestrates the store, hasher, token codec, policy and verification.

    Usage:
        service = AuthService(store, hasher, codec, policy, verification)
        service.register(RegistrationRequest("a@x.com", "Str0ng!Pass", "Ann", "Lee"))
        result = service.login("a@x.com", "Str0ng!Pass")
    """

    def __init__(
        self,
        store: UserStore,
        hasher: BcryptHasher,
        codec: TokenCodec,
        policy: PasswordPolicy,
        verification: VerificationService,
        max_failed_attempts: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._codec = codec
        self._policy = policy
        self._verification = verification
        self._max_failed_attempts = max_failed_attempts
        self._clock = clock
        # Same cost factor as real hashes, so a miss costs what a hit costs.
        self._dummy_hash = hasher.hash(_DUMMY_PASSWORD)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> AuthResult:
        logger.info("Login attempt for email: %s", email)
        account = self._store.get_by_email(email)

        reason: Optional[str] = None
        candidate = self._dummy_hash
        if account is None:
            reason = "unknown email"
        elif not account.is_eligible:
            reason = (
                f"account restricted (verified={account.email_verified}, "
                f"locked={account.account_locked}, enabled={account.enabled})"
            )
        elif not account.hashed_password:
            reason = f"no local password (provider={account.provider.value})"
        else:
            candidate = account.hashed_password

        password_ok = self._hasher.matches(password, candidate)
        if reason is None and not password_ok:
            reason = "wrong password"

        if reason is not None:
            logger.warning("Login rejected for %s: %s", email, reason)
            if account is not None:
                self._record_failure(account)
            raise AuthenticationFailedError()

        expiry = self._policy.check_expiry(account)
        if expiry.expired:
            logger.warning("Login denied for user %s - password has expired", email)
            raise PasswordExpiredError()
        if expiry.warning:
            logger.info(
                "Password expiry warning for user %s - %d days remaining",
                email,
                expiry.days_until_expiry,
            )

        now = self._clock()
        self._store.record_successful_login(account.id, now)
        account.failed_login_attempts = 0
        account.last_login = now
        logger.info("Successful login for user ID: %s", account.id)
        return self.issue_tokens(account)

    def _record_failure(self, account: Account) -> None:
        attempts = self._store.record_failed_login(account.email, self._max_failed_attempts)
        if attempts >= self._max_failed_attempts and not account.account_locked:
            logger.warning(
                "Account locked due to too many failed login attempts: %s (%d attempts)",
                account.email,
                attempts,
            )

    def issue_tokens(self, account: Account) -> AuthResult:
        return AuthResult(
            access_token=self._codec.generate_access_token(account),
            refresh_token=self._codec.generate_refresh_token(account),
            expires_in=self._codec.expires_in,
            user=to_user_summary(account),
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> AuthResult:
        """Trade a valid refresh token for a new access + refresh pair."""
        if not self._codec.is_refresh_token(refresh_token):
            logger.warning("Refresh rejected: not a valid refresh token")
            raise AuthenticationFailedError()
        email = self._codec.extract_subject(refresh_token)
        account = self._store.get_by_email(email) if email else None
        if account is None or not self._codec.validate(refresh_token, account) or not account.is_eligible:
            logger.warning("Refresh rejected for %s: account missing or ineligible", email)
            raise AuthenticationFailedError()
        return self.issue_tokens(account)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        request: RegistrationRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        logger.info("Attempting to register user with email: %s", request.email)

        if self._store.exists_by_email(request.email):
            logger.warning(
                "Registration attempt for existing email: %s - returning success to prevent enumeration",
                request.email,
            )
            return AuthResult()

        role_name = (request.role or "").strip().upper()
        if role_name not in {r.value for r in SELF_REGISTRATION_ROLES}:
            logger.warning("Registration attempt with invalid role: %s for email: %s", request.role, request.email)
            raise ValidationError("Invalid role specified", field="role")

        shell = Account(email=request.email, first_name=request.first_name, last_name=request.last_name)
        result = self._policy.validate(request.password, shell)
        if not result.valid:
            logger.warning(
                "Registration failed due to password policy violations for email: %s - %s",
                request.email,
                result.violations_message,
            )
            raise PolicyViolationError(result.violations, result.requirements)

        self.resolve_role(role_name)

        now = self._clock()
        account = Account(
            email=request.email,
            hashed_password=self._hasher.hash(request.password),
            first_name=request.first_name,
            last_name=request.last_name,
            phone_number=request.phone_number,
            provider=AuthProvider.LOCAL,
            created_at=now,
            updated_at=now,
            roles=[role_name],
        )
        try:
            account.id = self._store.create_user(account)
        except IntegrityError:
            # A concurrent registration took the email between the check and the insert
            logger.warning("Registration race for existing email: %s", request.email)
            return AuthResult()
        logger.info("Registered user with ID: %s - email verification required", account.id)

        self._policy.record_history(account, request.password, ip_address, user_agent)

        try:
            self._verification.send_verification_email(account)
        except Exception as exc:
            logger.error("Failed to send verification email to %s: %s", account.email, exc)

        return AuthResult(user=to_user_summary(account))

    def resolve_role(self, name: str) -> Role:
        """Return the named role, creating it on first reference."""
        role = self._store.get_role(name)
        if role is not None:
            return role
        logger.info("Creating new role: %s", name)
        try:
            description = ROLE_DESCRIPTIONS[RoleName(name)]
        except ValueError:
            description = "Basic user role"
        return self._store.create_role(Role(name=name, description=description))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def current_user(self, email: str) -> UserSummary:
        account = self._store.get_by_email(email)
        if account is None:
            raise NotFoundError(f"User not found: {email}")
        return to_user_summary(account)
