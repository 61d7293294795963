"""
API request and response models for the LocalBite Auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import AccountStatus, AuthResult, PasswordExpiryInfo, UserSummary

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Identity fields are trimmed; passwords are taken byte for byte.
Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Role is free text here; AuthService decides whether it is a role a
    visitor may pick (BUYER or SELLER) and rejects anything else with 400.
    """

    email: Trimmed = Field(pattern=EMAIL_PATTERN, max_length=255)
    # Never stripped; length rules live in the password policy.
    password: str = Field(min_length=1, max_length=256)
    first_name: Trimmed = Field(min_length=1, max_length=50)
    last_name: Trimmed = Field(min_length=1, max_length=50)
    role: Trimmed = "BUYER"
    phone_number: Optional[Trimmed] = Field(default=None, max_length=30)


class LoginRequest(BaseModel):
    email: Trimmed = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)


class EmailRequest(BaseModel):
    """Body for resend-verification and manual-verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)


class AdminAccountRequest(BaseModel):
    """Body for every POST /api/v1/auth/admin/* transition."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=500)


class PasswordCheckRequest(BaseModel):
    """Body for POST /api/v1/auth/check-password-strength.

    The optional identity fields enable the personal-information check.
    """

    password: str = Field(min_length=1, max_length=256)
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class OAuthExchangeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    """Public view of an account -- never carries hashes or security counters."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    phone_number: Optional[str]
    email_verified: bool
    provider: str
    roles: list[str]

    @classmethod
    def from_summary(cls, summary: UserSummary) -> "UserInfo":
        return cls(
            id=summary.id,
            email=summary.email,
            first_name=summary.first_name,
            last_name=summary.last_name,
            phone_number=summary.phone_number,
            email_verified=summary.email_verified,
            provider=summary.provider,
            roles=list(summary.roles),
        )


class AuthResponse(BaseModel):
    """Response for register / login / refresh / OAuth exchange.

    Registration returns null tokens; a duplicate-email registration also
    returns a null user, with the same 201 status as a fresh one.
    """

    model_config = ConfigDict(frozen=True)

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    user: Optional[UserInfo] = None

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            user=UserInfo.from_summary(result.user) if result.user else None,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ResetAttemptsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    previous_attempts: int


class VerificationStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    email_verified: bool


class PasswordStrengthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    violations: list[str]
    requirements: str
    suggestions: list[str]


class PasswordPolicyResponse(BaseModel):
    """The effective policy after the enforcement level is applied."""

    model_config = ConfigDict(frozen=True)

    enforcement_level: str
    min_length: int
    max_length: int
    require_uppercase: bool
    require_lowercase: bool
    require_digits: bool
    require_special_chars: bool
    min_digits: int
    min_special_chars: int
    allowed_special_chars: str
    max_repeated_chars: int
    remember_previous_passwords: int
    expiry_days: int
    requirements: str
    suggestions: list[str]


class PasswordExpiryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    expired: bool
    warning: bool
    days_until_expiry: int
    message: str
    action: str

    @classmethod
    def from_info(cls, info: PasswordExpiryInfo) -> "PasswordExpiryResponse":
        if info.expired:
            message = "Your password has expired. Please change it immediately."
            action = "CHANGE_PASSWORD_REQUIRED"
        elif info.warning:
            message = f"Your password will expire in {info.days_until_expiry} days. Consider changing it soon."
            action = "CHANGE_PASSWORD_RECOMMENDED"
        else:
            message = "Your password is current."
            action = "NO_ACTION_REQUIRED"
        return cls(
            expired=info.expired,
            warning=info.warning,
            days_until_expiry=info.days_until_expiry,
            message=message,
            action=action,
        )


class AccountStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    email_verified: bool
    account_locked: bool
    enabled: bool
    failed_login_attempts: int
    last_login: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    provider: str
    roles: list[str]

    @classmethod
    def from_status(cls, status: AccountStatus) -> "AccountStatusResponse":
        return cls(**vars(status))


class OAuthProviderInfo(BaseModel):
    """One configured OAuth provider, as listed for the login page."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    Extra keys carry structured detail: `violations` and `requirements` for
    password policy failures, `field` for validation errors, `limit_type` and
    `retry_after` for rate limiting.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health and GET /api/v1/auth/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "UP"
    service: str = "Authentication Service"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
