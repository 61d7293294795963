"""
auth/tokens.py -- JWT issuance and validation.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry the account's identity
       (user_id, names, email_verified, ROLE_-prefixed roles, provider);
       refresh tokens carry only user_id and token_type="refresh". Both share
       subject (email), issuer and audience.

  Key material: a single Base64 secret from Settings.jwt.secret, decoded once
       in TokenCodec.__init__ and kept on the instance. A bad secret raises
       ConfigurationError at construction, so the app never starts with it.

  Fail closed: every parse problem (bad signature, malformed, wrong
       issuer/audience, expired) becomes None / False. Nothing in here lets a
       JWTError reach a request handler.

  Expiry: checked against the injected clock with no leeway -- a token is
       valid while exp > now. jose's own exp check is disabled so the clock
       stays the single source of time.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from jose import JWTError, jwt

from auth.exceptions import ConfigurationError
from auth.models import Account
from core.clock import Clock, utcnow
from core.config import JwtSettings, decode_secret

logger = logging.getLogger("localbite.auth.tokens")

_ALGORITHM = "HS256"
REFRESH_TOKEN_TYPE = "refresh"


class TokenCodec:
    """Produce and verify signed, time-bounded bearer tokens.

    Usage:
        codec = TokenCodec(settings.jwt)
        token = codec.generate_access_token(account)
        codec.validate(token, account)  # True
    """

    def __init__(self, settings: JwtSettings, clock: Clock = utcnow) -> None:
        try:
            self._key: bytes = decode_secret(settings.secret)
        except ValueError as exc:
            logger.error("JWT signing key initialization failed: %s", exc)
            raise ConfigurationError(str(exc)) from exc
        self._settings = settings
        self._clock = clock
        logger.info("JWT signing key initialized (%d bytes)", len(self._key))

    @property
    def expires_in(self) -> int:
        """Access token lifetime in seconds, reported to clients."""
        return self._settings.access_ttl_seconds

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def generate_access_token(self, account: Account) -> str:
        claims = {
            "user_id": account.id,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "email_verified": account.email_verified,
            "roles": account.authorities,
            "provider": account.provider.value,
        }
        return self._encode(claims, account.email, self._settings.access_ttl_seconds)

    def generate_refresh_token(self, account: Account) -> str:
        claims = {"user_id": account.id, "token_type": REFRESH_TOKEN_TYPE}
        return self._encode(claims, account.email, self._settings.refresh_ttl_seconds)

    def _encode(self, claims: dict[str, Any], subject: str, ttl_seconds: int) -> str:
        now = self._clock()
        payload = {
            **claims,
            "sub": subject,
            "iss": self._settings.issuer,
            "aud": self._settings.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, self._key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def decode(self, token: Optional[str]) -> dict[str, Any] | None:
        """Verify signature, issuer, audience and expiry. Returns claims or None."""
        if not token or not token.strip():
            return None
        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                audience=self._settings.audience,
                issuer=self._settings.issuer,
                options={"verify_exp": False},
            )
        except JWTError as exc:
            logger.debug("JWT rejected: %s", exc)
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock().timestamp():
            logger.debug("JWT rejected: expired or missing exp")
            return None
        return payload

    def validate(self, token: Optional[str], account: Optional[Account]) -> bool:
        """True only if the token is intact, unexpired and issued to this account's email."""
        if account is None or not account.email:
            return False
        payload = self.decode(token)
        if payload is None:
            return False
        return payload.get("sub") == account.email

    def is_refresh_token(self, token: Optional[str]) -> bool:
        payload = self.decode(token)
        return payload is not None and payload.get("token_type") == REFRESH_TOKEN_TYPE

    def extract_subject(self, token: Optional[str]) -> str | None:
        payload = self.decode(token)
        return payload.get("sub") if payload else None

    def extract_user_id(self, token: Optional[str]) -> int | None:
        payload = self.decode(token)
        if not payload:
            return None
        user_id = payload.get("user_id")
        return user_id if isinstance(user_id, int) else None
