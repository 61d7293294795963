"""
api/routes/v1/password.py -- Password policy endpoints.

Routes:
  POST /api/v1/auth/check-password-strength -- dry-run validate a candidate password
  GET  /api/v1/auth/password-policy         -- the effective policy and hints
  GET  /api/v1/auth/password-expiry-status  -- expiry state for the caller (requires auth)

check-password-strength never touches history: the candidate is checked
against an unsaved account shell built from the optional identity fields.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    PasswordCheckRequest,
    PasswordExpiryResponse,
    PasswordPolicyResponse,
    PasswordStrengthResponse,
)
from api.ratelimit import rate_limit
from auth.dependencies import get_current_account
from auth.models import Account
from auth.policy import SPECIAL_CHARS, PasswordPolicy
from auth.ratelimit import RateLimitClass

router = APIRouter(dependencies=[Depends(rate_limit(RateLimitClass.GLOBAL, per_user=True))])


@router.post("/auth/check-password-strength", response_model=PasswordStrengthResponse)
def check_password_strength(request: Request, body: PasswordCheckRequest) -> PasswordStrengthResponse:
    policy: PasswordPolicy = request.app.state.password_policy
    shell = None
    if body.email or body.first_name or body.last_name:
        shell = Account(email=body.email or "", first_name=body.first_name, last_name=body.last_name)
    result = policy.validate(body.password, shell)
    return PasswordStrengthResponse(
        valid=result.valid,
        violations=result.violations,
        requirements=result.requirements or policy.requirements_summary(),
        suggestions=policy.suggestions(),
    )


@router.get("/auth/password-policy", response_model=PasswordPolicyResponse)
def password_policy(request: Request) -> PasswordPolicyResponse:
    policy: PasswordPolicy = request.app.state.password_policy
    effective = policy.effective
    return PasswordPolicyResponse(
        enforcement_level=effective.enforcement_level.value,
        min_length=effective.min_length,
        max_length=effective.max_length,
        require_uppercase=effective.require_uppercase,
        require_lowercase=effective.require_lowercase,
        require_digits=effective.require_digits,
        require_special_chars=effective.require_special_chars,
        min_digits=effective.min_digits,
        min_special_chars=effective.min_special_chars,
        allowed_special_chars=SPECIAL_CHARS,
        max_repeated_chars=effective.max_repeated_chars,
        remember_previous_passwords=effective.remember_previous_passwords,
        expiry_days=effective.expiry_days,
        requirements=policy.requirements_summary(effective),
        suggestions=policy.suggestions(),
    )


@router.get("/auth/password-expiry-status", response_model=PasswordExpiryResponse)
def password_expiry_status(
    request: Request,
    current: Account = Depends(get_current_account),
) -> PasswordExpiryResponse:
    policy: PasswordPolicy = request.app.state.password_policy
    return PasswordExpiryResponse.from_info(policy.check_expiry(current))
