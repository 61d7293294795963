"""Unit tests for auth/policy.py -- PasswordPolicy.

Covers:
- enforcement levels derive an effective policy without touching the settings
- violations accumulate in a fixed order
- personal info, keyboard patterns (first match only), repeats, common list
- password history: reuse detection and pruning to the retention count
- expiry: fresh / warning window / expired, and the disabled short-circuits
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.models import Account
from auth.policy import PasswordPolicy, effective_policy
from core.config import EnforcementLevel, PasswordPolicySettings


@pytest.fixture
def policy(store, hasher, clock) -> PasswordPolicy:
    return PasswordPolicy(PasswordPolicySettings(), store, hasher, clock=clock)


def _policy(store, hasher, clock, **settings) -> PasswordPolicy:
    return PasswordPolicy(PasswordPolicySettings(**settings), store, hasher, clock=clock)


def _saved_account(store, email: str = "dana@localbite.test", **fields) -> Account:
    account = Account(email=email, first_name="Dana", last_name="Whitfield", **fields)
    account.id = store.create_user(account)
    return account


class TestEffectivePolicy:
    @pytest.mark.parametrize(
        "level, expected_min",
        [
            (EnforcementLevel.LENIENT, 6),
            (EnforcementLevel.MODERATE, 8),
            (EnforcementLevel.STRICT, 10),
            (EnforcementLevel.DISABLED, 1),
        ],
    )
    def test_level_floor_applies_to_short_configured_minimum(self, level: EnforcementLevel, expected_min: int) -> None:
        settings = PasswordPolicySettings(enforcement_level=level, min_length=4)
        assert effective_policy(settings).min_length == expected_min

    def test_lenient_keeps_default_minimum_above_its_floor(self) -> None:
        settings = PasswordPolicySettings(enforcement_level=EnforcementLevel.LENIENT)
        assert effective_policy(settings).min_length == 8

    def test_configured_min_length_wins_when_larger(self) -> None:
        settings = PasswordPolicySettings(min_length=14, max_length=64)
        assert effective_policy(settings).min_length == 14

    def test_configured_settings_are_not_mutated(self) -> None:
        settings = PasswordPolicySettings(enforcement_level=EnforcementLevel.LENIENT)
        effective_policy(settings)
        assert settings.min_length == 8
        assert settings.no_common_passwords is True
        assert settings.no_keyboard_patterns is True


class TestValidate:
    def test_strong_password_is_valid(self, policy: PasswordPolicy) -> None:
        result = policy.validate("Str0ng!Pass")
        assert result.valid is True, result.violations
        assert result.violations == []

    def test_violations_in_order(self, policy: PasswordPolicy) -> None:
        result = policy.validate("abc")
        assert result.valid is False
        assert result.violations == [
            "Password must be at least 10 characters long",
            "Password must contain at least one uppercase letter",
            "Password must contain at least 1 digit(s)",
            "Password must contain at least 1 special character(s) from: !@#$%^&*()_+-=[]{}|;:,.<>?",
        ]

    def test_too_long(self, store, hasher, clock) -> None:
        policy = _policy(store, hasher, clock, max_length=16)
        result = policy.validate("Str0ng!Pass-Str0ng!Pass")
        assert "Password must not exceed 16 characters" in result.violations

    def test_common_password(self, store, hasher, clock) -> None:
        policy = _policy(store, hasher, clock, require_special_chars=False, enforcement_level="MODERATE")
        result = policy.validate("Password1")
        assert result.violations == ["Password is too common and easily guessable"]

    def test_lenient_skips_common_and_keyboard_checks(self, store, hasher, clock) -> None:
        policy = _policy(store, hasher, clock, require_special_chars=False, enforcement_level="LENIENT")
        assert policy.validate("Password1").valid is True
        assert policy.validate("Qwerty99").valid is True

    def test_personal_info(self, policy: PasswordPolicy) -> None:
        """Names and email username of MIN_PERSONAL_FRAGMENT (3) or more characters
        are rejected; shorter fragments are exempt, see the next test."""
        account = Account(email="marco.polo@localbite.test", first_name="Dana", last_name="Whitfield")
        result = policy.validate("Dana!Marco.Polo9", account)
        assert "Password should not contain your first name" in result.violations
        assert "Password should not contain your email username" in result.violations
        assert "Password should not contain your last name" not in result.violations

    def test_short_name_fragments_are_ignored(self, policy: PasswordPolicy) -> None:
        account = Account(email="a@x.com", first_name="A", last_name="B")
        assert policy.validate("Str0ng!Pass", account).valid is True

    def test_keyboard_pattern_reports_first_match_only(self, policy: PasswordPolicy) -> None:
        result = policy.validate("Qwerty!1234x")
        keyboard = [v for v in result.violations if "keyboard" in v]
        assert keyboard == ["Password should not contain keyboard patterns like 'qwerty'"]

    def test_repeated_characters(self, policy: PasswordPolicy) -> None:
        assert policy.validate("Gooo0d!Pass").valid is True
        result = policy.validate("Good!!!!Pass9")
        assert result.violations == ["Password should not contain more than 3 consecutive identical characters"]

    def test_disabled_accepts_anything(self, store, hasher, clock) -> None:
        policy = _policy(store, hasher, clock, enforcement_level="DISABLED")
        result = policy.validate("a")
        assert result.valid is True
        assert result.violations == []

    def test_result_carries_requirements(self, policy: PasswordPolicy) -> None:
        assert policy.validate("abc").requirements == policy.requirements_summary()


class TestHistory:
    def test_reuse_is_rejected(self, policy: PasswordPolicy, store) -> None:
        account = _saved_account(store)
        policy.record_history(account, "Old!Passw0rd1", ip_address="10.0.0.1", user_agent="pytest")
        result = policy.validate("Old!Passw0rd1", account)
        assert "Password has been used recently. Please choose a different password." in result.violations
        assert policy.validate("New!Passw0rd2", account).valid is True

    def test_new_account_skips_history(self, policy: PasswordPolicy) -> None:
        assert policy.validate("Str0ng!Pass", Account(email="fresh@localbite.test")).valid is True

    def test_prunes_to_retention_count(self, policy: PasswordPolicy, store, clock) -> None:
        account = _saved_account(store)
        for n in range(7):
            policy.record_history(account, f"Rotat3d!Pw{n}")
            clock.advance(minutes=1)
        history = store.list_history(account.id)
        assert len(history) == 5
        assert history[0].created_at > history[-1].created_at

    def test_oldest_password_usable_again_after_pruning(self, policy: PasswordPolicy, store, clock) -> None:
        account = _saved_account(store)
        for n in range(6):
            policy.record_history(account, f"Rotat3d!Pw{n}")
            clock.advance(minutes=1)
        assert policy.validate("Rotat3d!Pw0", account).valid is True
        assert policy.validate("Rotat3d!Pw1", account).valid is False

    def test_history_failure_is_swallowed(self, policy: PasswordPolicy, store) -> None:
        account = _saved_account(store)
        # Disposing the pool drops the shared in-memory database; the next
        # connection sees an empty schema and every history query fails.
        store.engine.dispose()
        policy.record_history(account, "Str0ng!Pass")
        assert policy.validate("Str0ng!Pass", account).valid is True


class TestExpiry:
    def _account(self, clock, age_days: int) -> Account:
        stamp = clock() - timedelta(days=age_days)
        return Account(email="e@localbite.test", created_at=stamp, updated_at=stamp)

    def test_fresh_password(self, policy: PasswordPolicy, clock) -> None:
        info = policy.check_expiry(self._account(clock, 10))
        assert (info.expired, info.warning, info.days_until_expiry) == (False, False, 80)

    def test_warning_window(self, policy: PasswordPolicy, clock) -> None:
        info = policy.check_expiry(self._account(clock, 85))
        assert (info.expired, info.warning, info.days_until_expiry) == (False, True, 5)

    def test_expired(self, policy: PasswordPolicy, clock) -> None:
        info = policy.check_expiry(self._account(clock, 91))
        assert (info.expired, info.warning, info.days_until_expiry) == (True, False, 0)

    def test_created_at_used_when_never_updated(self, policy: PasswordPolicy, clock) -> None:
        account = Account(email="e@localbite.test", created_at=clock() - timedelta(days=100))
        assert policy.check_expiry(account).expired is True

    @pytest.mark.parametrize("overrides", [{"enforcement_level": "DISABLED"}, {"expiry_days": 0}])
    def test_disabled_expiry(self, store, hasher, clock, overrides) -> None:
        policy = _policy(store, hasher, clock, **overrides)
        info = policy.check_expiry(self._account(clock, 400))
        assert (info.expired, info.warning, info.days_until_expiry) == (False, False, 0)


class TestGuidance:
    def test_requirements_summary(self, policy: PasswordPolicy) -> None:
        assert policy.requirements_summary() == (
            "Password requirements: 10-128 characters, must include uppercase letters, "
            "lowercase letters, numbers, special characters"
        )

    def test_suggestions_follow_active_rules(self, store, hasher, clock) -> None:
        hints = _policy(store, hasher, clock).suggestions()
        assert "Use a mix of uppercase and lowercase letters" in hints
        assert "Make it at least 10 characters long" in hints
        assert hints[-1] == "Consider using a passphrase with multiple words"

        relaxed = _policy(
            store,
            hasher,
            clock,
            require_uppercase=False,
            require_lowercase=False,
            enforcement_level="LENIENT",
        ).suggestions()
        assert "Use a mix of uppercase and lowercase letters" not in relaxed
        assert not any("common passwords" in h for h in relaxed)
