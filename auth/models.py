"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the shape. Roles are always fully materialised as a
list of names -- there are no lazy associations, so reading `roles` never
touches the database.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AuthProvider(str, Enum):
    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"
    FACEBOOK = "FACEBOOK"
    APPLE = "APPLE"


class RoleName(str, Enum):
    BUYER = "BUYER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


ROLE_DESCRIPTIONS = {
    RoleName.BUYER: "Can order food and write reviews",
    RoleName.SELLER: "Can create food listings and manage orders",
    RoleName.ADMIN: "Full system access and user management",
}

# Roles a visitor may pick for themselves. ADMIN is never self-assigned.
SELF_REGISTRATION_ROLES = frozenset({RoleName.BUYER, RoleName.SELLER})


@dataclass
class Account:
    """A LocalBite user.

    hashed_password is None for OAuth-only accounts (they never get one).
    provider_id is the provider's stable subject for OAuth accounts.
    roles holds role names ("BUYER", "SELLER", "ADMIN").
    """

    email: str
    id: Optional[int] = None
    hashed_password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    email_verified: bool = False
    account_locked: bool = False
    enabled: bool = True
    provider: AuthProvider = AuthProvider.LOCAL
    provider_id: Optional[str] = None
    failed_login_attempts: int = 0
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    roles: list[str] = field(default_factory=list)

    @property
    def authorities(self) -> list[str]:
        """Role names in granted-authority form, e.g. ["ROLE_BUYER"]."""
        if not self.roles:
            return [f"ROLE_{RoleName.BUYER.value}"]
        return [f"ROLE_{name}" for name in self.roles]

    @property
    def is_eligible(self) -> bool:
        """Verified, unlocked and enabled -- all three are needed to log in."""
        return self.email_verified and not self.account_locked and self.enabled


@dataclass
class Role:
    name: str
    description: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class PasswordHistoryEntry:
    user_id: int
    password_hash: str
    id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class VerificationToken:
    """Single-use email verification token (24 hour lifetime)."""

    user_id: int
    token: str
    expires_at: datetime
    id: Optional[int] = None
    used: bool = False
    created_at: Optional[datetime] = None


@dataclass
class RegistrationRequest:
    email: str
    password: str
    first_name: str
    last_name: str
    role: str = RoleName.BUYER.value
    phone_number: Optional[str] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class PasswordValidationResult:
    valid: bool
    violations: list[str] = field(default_factory=list)
    requirements: str = ""

    @property
    def violations_message(self) -> str:
        return "; ".join(self.violations)


@dataclass
class PasswordExpiryInfo:
    expired: bool = False
    warning: bool = False
    days_until_expiry: int = 0


@dataclass
class UserSummary:
    """Public view of an account -- what the API hands back to clients."""

    id: Optional[int]
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    phone_number: Optional[str]
    email_verified: bool
    provider: str
    roles: list[str]


@dataclass
class AuthResult:
    """Outcome of register / login / refresh / OAuth linking.

    Registration and duplicate-email registration both return
    access_token=None; the latter also returns user=None.
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    user: Optional[UserSummary] = None


@dataclass
class AccountStatus:
    """Admin snapshot of every account-security field."""

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


@dataclass
class OAuthProfile:
    """Provider-neutral view of an OAuth user-info payload."""

    provider: AuthProvider
    provider_id: Optional[str]
    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None


def to_user_summary(account: Account) -> UserSummary:
    return UserSummary(
        id=account.id,
        email=account.email,
        first_name=account.first_name,
        last_name=account.last_name,
        phone_number=account.phone_number,
        email_verified=account.email_verified,
        provider=account.provider.value,
        roles=account.authorities,
    )
