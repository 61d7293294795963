"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for LocalBite Auth happen here. No module should
call os.getenv() or os.environ.get() directly -- the ASGI entry point calls
get_settings() once and create_app() passes the Settings object down to every
service by injection.

Design patterns used:
  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Nested sections use "__" as
      the delimiter: JWT__SECRET, RATE_LIMIT__LOGIN__CAPACITY,
      PASSWORD_POLICY__ENFORCEMENT_LEVEL.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. A Settings object that constructs successfully is safe to
      serve traffic with -- every invalid value fails startup instead.

Security notes:
  [M6] JWT__SECRET must be Base64 and decode to at least 32 bytes (256 bits).
       Generate one with: openssl rand -base64 64

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure. Dev mode generates a random one with a warning.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import base64
import binascii
import logging
import secrets
from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("localbite.config")

MIN_SECRET_BYTES = 32


def decode_secret(secret: str) -> bytes:
    """Decode a Base64 signing secret, raising ValueError if it is unusable.

    Shared by the settings validator and auth.tokens.TokenCodec so both agree
    on what counts as a valid key.
    """
    if not secret or not secret.strip():
        raise ValueError("JWT secret is not configured. Set JWT__SECRET (openssl rand -base64 64).")
    try:
        key = base64.b64decode(secret.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("JWT secret must be a valid Base64-encoded string.") from exc
    if len(key) < MIN_SECRET_BYTES:
        raise ValueError(
            f"JWT secret is too short: {len(key)} bytes (minimum {MIN_SECRET_BYTES} bytes required)."
        )
    return key


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class JwtSettings(BaseModel):
    # Empty string is the sentinel for "not configured". Settings either
    # generates a dev secret or refuses to start, so services never see "".
    secret: str = ""
    access_ttl_seconds: int = Field(default=3600, gt=0)
    refresh_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    issuer: str = "LocalBite"
    audience: str = "LocalBite-Users"


class BucketSpec(BaseModel):
    """Token-bucket bandwidth: `capacity` tokens, `refill_tokens` added every period."""

    capacity: int = Field(gt=0)
    refill_tokens: int = Field(gt=0)
    refill_period_minutes: int = Field(gt=0)

    @property
    def refill_period_seconds(self) -> int:
        return self.refill_period_minutes * 60


class RateLimitSettings(BaseModel):
    global_limit: BucketSpec = Field(
        default_factory=lambda: BucketSpec(capacity=100, refill_tokens=100, refill_period_minutes=1)
    )
    login: BucketSpec = BucketSpec(capacity=5, refill_tokens=2, refill_period_minutes=5)
    register: BucketSpec = BucketSpec(capacity=3, refill_tokens=1, refill_period_minutes=10)
    email_verification: BucketSpec = BucketSpec(capacity=3, refill_tokens=1, refill_period_minutes=15)
    password_reset: BucketSpec = BucketSpec(capacity=2, refill_tokens=1, refill_period_minutes=30)
    admin: BucketSpec = BucketSpec(capacity=50, refill_tokens=25, refill_period_minutes=1)

    cache_maximum_size: int = Field(default=10_000, gt=0)
    cache_expire_after_access_minutes: int = Field(default=60, gt=0)


class EnforcementLevel(str, Enum):
    DISABLED = "DISABLED"  # no password policy enforcement
    LENIENT = "LENIENT"  # basic requirements only
    MODERATE = "MODERATE"  # standard requirements
    STRICT = "STRICT"  # everything on, longest minimum length


class PasswordPolicySettings(BaseModel):
    # Basic strength requirements
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digits: bool = True
    require_special_chars: bool = True
    min_special_chars: int = 1
    min_digits: int = 1

    # Advanced checks
    no_common_passwords: bool = True
    no_personal_info: bool = True
    no_keyboard_patterns: bool = True
    max_repeated_chars: int = 3

    # History and expiry
    remember_previous_passwords: int = 5
    expiry_days: int = 90
    warn_before_expiry_days: int = 7

    # Lockout
    max_failed_attempts: int = Field(default=5, gt=0)

    enforcement_level: EnforcementLevel = EnforcementLevel.STRICT

    @model_validator(mode="after")
    def validate_lengths(self) -> "PasswordPolicySettings":
        if self.min_length < 4:
            logger.warning("Minimum password length is very weak: %d characters", self.min_length)
        if self.max_length > 256:
            logger.warning("Maximum password length is very high: %d characters", self.max_length)
        if self.min_length > self.max_length:
            raise ValueError("Minimum password length cannot be greater than maximum length.")
        return self


class OAuthSettings(BaseModel):
    # Empty string means the provider is disabled.
    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""
    # One-time exchange codes handed to the frontend after a provider callback.
    exchange_code_ttl_seconds: int = Field(default=60, gt=0)


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"
    database_url: str = "sqlite:///localbite_auth.db"
    # Cost factor for bcrypt. Tests drop this to 4 to keep the suite fast.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # HTTP boundary
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    # Signs the Starlette session cookie authlib uses for OAuth state.
    session_secret: str = ""
    # POST /auth/manual-verify exists for demos and tests only.
    manual_verification_enabled: bool = False

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    jwt: JwtSettings = Field(default_factory=JwtSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    password_policy: PasswordPolicySettings = Field(default_factory=PasswordPolicySettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the signing-key policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if the secret is missing, is not
            Base64, or decodes to fewer than 32 bytes.
        """
        if not self.jwt.secret:
            if self.debug:
                self.jwt.secret = base64.b64encode(secrets.token_bytes(64)).decode("ascii")
                logger.warning("WARNING: Using auto-generated JWT secret. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT__SECRET is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        decode_secret(self.jwt.secret)
        if not self.session_secret:
            self.session_secret = secrets.token_hex(32)
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only the ASGI entry point should call this. Services receive the Settings
    object (or one of its sections) through their constructors.

    In tests: construct Settings(...) directly and pass it to create_app().
    """
    return Settings()
