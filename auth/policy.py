"""
auth/policy.py -- Password strength, reuse and expiry rules.

The configured PasswordPolicySettings are never modified. Each call derives
an effective policy for the current enforcement level with model_copy():

  DISABLED  every check off; validate() always succeeds
  LENIENT   common-password and keyboard-pattern checks off, min length >= 6
  MODERATE  min length >= 8
  STRICT    min length >= 10

validate() runs every check and accumulates violations in a fixed order:
length, composition, common password, personal info, keyboard pattern
(first match only), history, repeated characters.

Best-effort side channels:
  record_history() and the history lookup inside validate() log store
  failures and carry on. A broken history table must not block registration.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Optional

from auth.models import Account, PasswordExpiryInfo, PasswordHistoryEntry, PasswordValidationResult
from auth.passwords import BcryptHasher
from auth.store import UserStore
from core.clock import Clock, utcnow
from core.config import EnforcementLevel, PasswordPolicySettings

logger = logging.getLogger("localbite.auth.policy")

SPECIAL_CHARS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

KEYBOARD_PATTERNS = (
    "qwerty",
    "asdf",
    "zxcv",
    "1234",
    "abcd",
    "qwertyuiop",
    "asdfghjkl",
    "zxcvbnm",
    "123456789",
    "987654321",
    "abcdefgh",
)

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "password123", "admin", "qwerty", "letmein", "welcome",
        "monkey", "1234567890", "abc123", "111111", "dragon", "master", "sunshine",
        "iloveyou", "princess", "football", "123123", "lovely", "secret", "password1",
        "12345678", "123456789", "qwerty123", "welcome123", "admin123",
        "password12", "123abc", "welcome1", "hello123", "user", "guest", "test",
        "1234", "12345", "654321", "superman", "batman", "computer", "internet",
    }
)

# Name and email fragments shorter than this are too common to be personal.
MIN_PERSONAL_FRAGMENT = 3

_LEVEL_MIN_LENGTH = {
    EnforcementLevel.LENIENT: 6,
    EnforcementLevel.MODERATE: 8,
    EnforcementLevel.STRICT: 10,
}


def effective_policy(settings: PasswordPolicySettings) -> PasswordPolicySettings:
    """Return a copy of `settings` adjusted for its enforcement level."""
    level = settings.enforcement_level
    if level == EnforcementLevel.DISABLED:
        return settings.model_copy(
            update={
                "min_length": 1,
                "require_uppercase": False,
                "require_lowercase": False,
                "require_digits": False,
                "require_special_chars": False,
                "no_common_passwords": False,
                "no_personal_info": False,
                "no_keyboard_patterns": False,
            }
        )
    update = {"min_length": max(_LEVEL_MIN_LENGTH[level], settings.min_length)}
    if level == EnforcementLevel.LENIENT:
        update["no_common_passwords"] = False
        update["no_keyboard_patterns"] = False
    return settings.model_copy(update=update)


class PasswordPolicy:
    """Validate passwords and track password history and expiry.

    Usage:
        policy = PasswordPolicy(settings.password_policy, store, hasher)
        result = policy.validate("Str0ng!Passw0rd", account)
        if not result.valid:
            raise PolicyViolationError(result.violations, result.requirements)
    """

    def __init__(
        self,
        settings: PasswordPolicySettings,
        store: UserStore,
        hasher: BcryptHasher,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._hasher = hasher
        self._clock = clock

    @property
    def enforcement_enabled(self) -> bool:
        return self._settings.enforcement_level != EnforcementLevel.DISABLED

    @property
    def effective(self) -> PasswordPolicySettings:
        return effective_policy(self._settings)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, password: str, account: Optional[Account] = None) -> PasswordValidationResult:
        if not self.enforcement_enabled:
            return PasswordValidationResult(valid=True)

        policy = self.effective
        violations: list[str] = []

        self._check_length(password, policy, violations)
        self._check_composition(password, policy, violations)
        if policy.no_common_passwords and password.lower() in COMMON_PASSWORDS:
            violations.append("Password is too common and easily guessable")
        if policy.no_personal_info and account is not None:
            self._check_personal_info(password, account, violations)
        if policy.no_keyboard_patterns:
            self._check_keyboard_patterns(password, violations)
        if account is not None and policy.remember_previous_passwords > 0:
            self._check_history(password, account, policy, violations)
        self._check_repeated(password, policy, violations)

        who = account.email if account is not None else "unknown"
        if violations:
            logger.warning("Password validation failed for user: %s - %d violations", who, len(violations))
        else:
            logger.info("Password validation successful for user: %s", who)
        return PasswordValidationResult(
            valid=not violations,
            violations=violations,
            requirements=self.requirements_summary(policy),
        )

    @staticmethod
    def _check_length(password: str, policy: PasswordPolicySettings, violations: list[str]) -> None:
        if len(password) < policy.min_length:
            violations.append(f"Password must be at least {policy.min_length} characters long")
        if len(password) > policy.max_length:
            violations.append(f"Password must not exceed {policy.max_length} characters")

    @staticmethod
    def _check_composition(password: str, policy: PasswordPolicySettings, violations: list[str]) -> None:
        if policy.require_uppercase and not re.search(r"[A-Z]", password):
            violations.append("Password must contain at least one uppercase letter")
        if policy.require_lowercase and not re.search(r"[a-z]", password):
            violations.append("Password must contain at least one lowercase letter")
        if policy.require_digits:
            digits = sum(1 for ch in password if ch.isdigit())
            if digits < policy.min_digits:
                violations.append(f"Password must contain at least {policy.min_digits} digit(s)")
        if policy.require_special_chars:
            specials = sum(1 for ch in password if ch in SPECIAL_CHARS)
            if specials < policy.min_special_chars:
                violations.append(
                    f"Password must contain at least {policy.min_special_chars} "
                    f"special character(s) from: {SPECIAL_CHARS}"
                )

    @staticmethod
    def _check_personal_info(password: str, account: Account, violations: list[str]) -> None:
        lowered = password.lower()

        def contains(fragment: Optional[str]) -> bool:
            if not fragment or len(fragment.strip()) < MIN_PERSONAL_FRAGMENT:
                return False
            return fragment.strip().lower() in lowered

        if contains(account.first_name):
            violations.append("Password should not contain your first name")
        if contains(account.last_name):
            violations.append("Password should not contain your last name")
        if account.email and contains(account.email.split("@")[0]):
            violations.append("Password should not contain your email username")

    @staticmethod
    def _check_keyboard_patterns(password: str, violations: list[str]) -> None:
        lowered = password.lower()
        for pattern in KEYBOARD_PATTERNS:
            if pattern in lowered:
                violations.append(f"Password should not contain keyboard patterns like '{pattern}'")
                break

    def _check_history(
        self,
        password: str,
        account: Account,
        policy: PasswordPolicySettings,
        violations: list[str],
    ) -> None:
        if account.id is None:
            logger.debug("Skipping password history check for new user: %s", account.email)
            return
        try:
            recent = self._store.list_history(account.id)[: policy.remember_previous_passwords]
        except Exception as exc:
            logger.warning("Failed to check password history for user %s: %s", account.email, exc)
            return
        for entry in recent:
            if self._hasher.matches(password, entry.password_hash):
                violations.append("Password has been used recently. Please choose a different password.")
                break

    @staticmethod
    def _check_repeated(password: str, policy: PasswordPolicySettings, violations: list[str]) -> None:
        limit = policy.max_repeated_chars
        if limit > 0 and re.search(r"(.)\1{%d,}" % limit, password):
            violations.append(f"Password should not contain more than {limit} consecutive identical characters")

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def record_history(
        self,
        account: Account,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Hash and store the password, then prune beyond the retention count.

        Never raises: the caller's primary operation has already succeeded.
        """
        keep = self._settings.remember_previous_passwords
        if not self.enforcement_enabled or keep <= 0 or account.id is None:
            return
        try:
            self._store.add_history(
                PasswordHistoryEntry(
                    user_id=account.id,
                    password_hash=self._hasher.hash(password),
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=self._clock(),
                )
            )
            removed = self._store.prune_history(account.id, keep)
            if removed:
                logger.debug("Cleaned up %d old password history entries for user: %s", removed, account.email)
            logger.info("Password saved to history for user: %s", account.email)
        except Exception as exc:
            logger.error("Failed to save password history for user %s: %s", account.email, exc)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def check_expiry(self, account: Account) -> PasswordExpiryInfo:
        """Expiry is measured from updated_at, or created_at if never updated."""
        expiry_days = self._settings.expiry_days
        reference = account.updated_at or account.created_at
        if not self.enforcement_enabled or expiry_days <= 0 or reference is None:
            return PasswordExpiryInfo()

        now = self._clock()
        expires_at = reference + timedelta(days=expiry_days)
        warn_from = expires_at - timedelta(days=self._settings.warn_before_expiry_days)
        expired = now > expires_at
        return PasswordExpiryInfo(
            expired=expired,
            warning=now > warn_from and not expired,
            days_until_expiry=max(0, (expires_at - now).days),
        )

    # ------------------------------------------------------------------
    # Guidance
    # ------------------------------------------------------------------

    def suggestions(self) -> list[str]:
        """Human-readable hints for the rules currently in force."""
        policy = self.effective
        hints: list[str] = []
        if policy.require_uppercase or policy.require_lowercase:
            hints.append("Use a mix of uppercase and lowercase letters")
        if policy.require_digits:
            hints.append(f"Include at least {policy.min_digits} number(s)")
        if policy.require_special_chars:
            hints.append(f"Include at least {policy.min_special_chars} special character(s): {SPECIAL_CHARS}")
        hints.append(f"Make it at least {policy.min_length} characters long")
        if policy.no_common_passwords:
            hints.append("Avoid common passwords like 'password123' or 'qwerty'")
        if policy.no_personal_info:
            hints.append("Don't use personal information like your name or email")
        hints.append("Consider using a passphrase with multiple words")
        return hints

    def requirements_summary(self, policy: Optional[PasswordPolicySettings] = None) -> str:
        policy = policy or self.effective
        summary = f"Password requirements: {policy.min_length}-{policy.max_length} characters"
        required = [
            label
            for enabled, label in (
                (policy.require_uppercase, "uppercase letters"),
                (policy.require_lowercase, "lowercase letters"),
                (policy.require_digits, "numbers"),
                (policy.require_special_chars, "special characters"),
            )
            if enabled
        ]
        if required:
            summary += ", must include " + ", ".join(required)
        return summary
