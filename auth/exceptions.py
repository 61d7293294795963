"""
auth/exceptions.py -- Error taxonomy for the auth engine.

Services raise these; api/main.py maps each class to one HTTP status and the
shared ErrorResponse envelope. Services never build HTTP responses themselves.

Disclosure rules:
  ValidationError / PolicyViolationError carry field names and violation
      lists -- safe to return verbatim.
  AuthenticationFailedError always carries the same message, whatever the
      real cause (unknown email, wrong password, locked, disabled,
      unverified). The real cause goes to the server log only.
  ConfigurationError is raised at startup and never reaches a client.
"""

from __future__ import annotations

from typing import Any, Optional

GENERIC_AUTH_FAILURE = "Invalid email or password"


class AuthServiceError(Exception):
    """Base exception for all auth engine errors."""

    status_code: int = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to the `error` object of an API response."""
        return {
            "code": self.code,
            "message": self.message,
            **self.details,
        }


class ValidationError(AuthServiceError):
    """Malformed input (bad role, unsupported provider, missing field)."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, code="validation_error", details={"field": field} if field else None)


class PolicyViolationError(AuthServiceError):
    """Password rejected by the password policy."""

    status_code = 400

    def __init__(self, violations: list[str], requirements: str = ""):
        super().__init__(
            "Password policy violation: " + "; ".join(violations),
            code="password_policy_violation",
            details={"violations": list(violations), "requirements": requirements},
        )
        self.violations = list(violations)


class AuthenticationFailedError(AuthServiceError):
    """Credential rejection. The message is fixed to prevent account enumeration."""

    status_code = 401

    def __init__(self):
        super().__init__(GENERIC_AUTH_FAILURE, code="authentication_failed")


class PasswordExpiredError(AuthServiceError):
    """Correct credentials, but the password is past its expiry date."""

    status_code = 401

    def __init__(self):
        super().__init__(
            "Your password has expired. Please reset your password to continue.",
            code="password_expired",
        )


class AuthorizationError(AuthServiceError):
    status_code = 403

    def __init__(self, message: str = "Admin access required."):
        super().__init__(message, code="forbidden")


class RateLimitedError(AuthServiceError):
    """Request denied by the token-bucket limiter.

    retry_after is whole seconds; limit_class is the RateLimitClass name.
    """

    status_code = 429

    def __init__(self, limit_class: str, retry_after: int, limit: int = 0):
        super().__init__(
            "Too many requests. Please try again later.",
            code="rate_limited",
            details={"limit_type": limit_class, "retry_after": retry_after},
        )
        self.limit_class = limit_class
        self.retry_after = retry_after
        self.limit = limit


class NotFoundError(AuthServiceError):
    status_code = 404

    def __init__(self, message: str):
        super().__init__(message, code="not_found")


class ConflictError(AuthServiceError):
    """Admin transition requested on an account already in the target state."""

    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, code="conflict")


class ConfigurationError(AuthServiceError):
    """Fatal startup error. The process must not serve traffic."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, code="configuration_error")
