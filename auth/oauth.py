"""
auth/oauth.py -- Authlib OAuth2 provider registry and account linking.

Providers are registered from OAuthSettings when the app is built. Only
providers with both client ID and secret configured get registered, and
only those are listed by GET /api/v1/auth/oauth2/providers.

Supported providers:
  google   -- Authorization code flow; OIDC discovery.
  facebook -- Authorization code flow; static Graph API endpoints.

Profile extraction is a dispatch table keyed by AuthProvider. Each entry
maps that provider's user-info payload to an OAuthProfile. A provider with
no entry is a ValidationError.

Security notes:
  [H1] Google reports email_verified. An email it explicitly marks as
       unverified is treated as missing, and linking fails.

  Token transport: the callback never puts tokens in the redirect URL.
       OAuthCodeExchange parks the AuthResult under a random one-time code
       that lives for `exchange_code_ttl_seconds`; the frontend redeems it
       with POST /api/v1/auth/oauth2/exchange.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable
from typing import Any, Optional

from authlib.integrations.starlette_client import OAuth
from sqlalchemy.exc import IntegrityError

from auth.exceptions import AuthenticationFailedError, ValidationError
from auth.models import Account, AuthProvider, AuthResult, OAuthProfile, RoleName
from auth.service import AuthService
from auth.store import UserStore
from core.clock import Clock, utcnow
from core.config import OAuthSettings

logger = logging.getLogger("localbite.auth.oauth")

_PROVIDER_LABELS = {
    AuthProvider.GOOGLE: "Google",
    AuthProvider.FACEBOOK: "Facebook",
}


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def _configured(settings: OAuthSettings) -> dict[AuthProvider, bool]:
    return {
        AuthProvider.GOOGLE: bool(settings.google_client_id and settings.google_client_secret),
        AuthProvider.FACEBOOK: bool(settings.facebook_client_id and settings.facebook_client_secret),
    }


def build_oauth(settings: OAuthSettings) -> OAuth:
    oauth = OAuth()
    configured = _configured(settings)

    # Google -- OIDC discovery
    if configured[AuthProvider.GOOGLE]:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # Facebook -- static endpoints (no OIDC discovery document)
    if configured[AuthProvider.FACEBOOK]:
        oauth.register(
            name="facebook",
            client_id=settings.facebook_client_id,
            client_secret=settings.facebook_client_secret,
            access_token_url="https://graph.facebook.com/v18.0/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://www.facebook.com/v18.0/dialog/oauth",
            api_base_url="https://graph.facebook.com/v18.0/",
            client_kwargs={"scope": "email public_profile"},
        )
        logger.info("Facebook OAuth provider registered")

    return oauth


def get_enabled_providers(settings: OAuthSettings) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every configured provider."""
    return [
        {"name": provider.value.lower(), "label": _PROVIDER_LABELS[provider]}
        for provider, enabled in _configured(settings).items()
        if enabled
    ]


def parse_provider(name: str) -> AuthProvider:
    """Map a URL path segment ("google") to a supported AuthProvider."""
    try:
        provider = AuthProvider(name.upper())
    except ValueError:
        provider = None
    if provider not in PROFILE_EXTRACTORS:
        raise ValidationError(f"Unsupported OAuth2 provider: {name}", field="provider")
    return provider


async def fetch_user_info(client, provider: AuthProvider, token: dict) -> dict[str, Any]:
    """Return the provider's raw user-info payload after the code exchange."""
    if provider == AuthProvider.GOOGLE:
        userinfo = token.get("userinfo")
        if not userinfo:
            userinfo = await client.userinfo(token=token)
        return dict(userinfo)
    if provider == AuthProvider.FACEBOOK:
        resp = await client.get("me", params={"fields": "id,first_name,last_name,email"}, token=token)
        resp.raise_for_status()
        return resp.json()
    raise ValidationError(f"Unsupported OAuth2 provider: {provider.value}", field="provider")


# ---------------------------------------------------------------------------
# Profile extraction
# ---------------------------------------------------------------------------


def _google_profile(attributes: dict[str, Any]) -> OAuthProfile:
    email = attributes.get("email")
    if attributes.get("email_verified") is False:
        logger.warning("Google reported an unverified email: %s", email)
        email = None
    return OAuthProfile(
        provider=AuthProvider.GOOGLE,
        provider_id=attributes.get("sub"),
        email=email,
        first_name=attributes.get("given_name"),
        last_name=attributes.get("family_name"),
        avatar_url=attributes.get("picture"),
    )


def _facebook_profile(attributes: dict[str, Any]) -> OAuthProfile:
    provider_id = attributes.get("id")
    return OAuthProfile(
        provider=AuthProvider.FACEBOOK,
        provider_id=str(provider_id) if provider_id is not None else None,
        email=attributes.get("email"),
        first_name=attributes.get("first_name"),
        last_name=attributes.get("last_name"),
        avatar_url=f"https://graph.facebook.com/{provider_id}/picture?type=large" if provider_id else None,
    )


PROFILE_EXTRACTORS: dict[AuthProvider, Callable[[dict[str, Any]], OAuthProfile]] = {
    AuthProvider.GOOGLE: _google_profile,
    AuthProvider.FACEBOOK: _facebook_profile,
}


def extract_profile(provider: AuthProvider, attributes: dict[str, Any]) -> OAuthProfile:
    extractor = PROFILE_EXTRACTORS.get(provider)
    if extractor is None:
        raise ValidationError(f"Sorry! Login with {provider.value} is not supported yet.", field="provider")
    return extractor(attributes)


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


class OAuthLinker:
    """Find-or-create the local account for a provider identity and issue tokens."""

    def __init__(self, store: UserStore, auth_service: AuthService, clock: Clock = utcnow) -> None:
        self._store = store
        self._auth = auth_service
        self._clock = clock

    def link(self, provider: AuthProvider, attributes: dict[str, Any]) -> AuthResult:
        profile = extract_profile(provider, attributes)
        if not profile.email:
            logger.warning("OAuth2 login via %s rejected: provider supplied no email", provider.value)
            raise AuthenticationFailedError()

        account = self._store.get_by_email(profile.email)
        if account is not None:
            self._update_existing(account, profile)
        else:
            account = self._register_new(profile)

        if not account.is_eligible:
            logger.warning(
                "OAuth2 login rejected for %s: account restricted (locked=%s, enabled=%s)",
                account.email,
                account.account_locked,
                account.enabled,
            )
            raise AuthenticationFailedError()
        logger.info("OAuth2 login successful for %s via %s", account.email, provider.value)
        return self._auth.issue_tokens(account)

    def _update_existing(self, account: Account, profile: OAuthProfile) -> None:
        changed = False
        if account.provider != profile.provider or account.provider_id != profile.provider_id:
            account.provider = profile.provider
            account.provider_id = profile.provider_id
            changed = True
        if not account.email_verified:
            account.email_verified = True
            changed = True
        if profile.first_name and profile.first_name != account.first_name:
            account.first_name = profile.first_name
            changed = True
        if profile.last_name and profile.last_name != account.last_name:
            account.last_name = profile.last_name
            changed = True
        if changed:
            account.updated_at = self._clock()
            self._store.link_provider(
                account.id,
                account.provider,
                account.provider_id,
                account.first_name,
                account.last_name,
                account.updated_at,
            )
            logger.info("Updated existing user %s from %s profile", account.email, profile.provider.value)

    def _register_new(self, profile: OAuthProfile) -> Account:
        self._auth.resolve_role(RoleName.BUYER.value)
        now = self._clock()
        account = Account(
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            email_verified=True,
            provider=profile.provider,
            provider_id=profile.provider_id,
            created_at=now,
            updated_at=now,
            roles=[RoleName.BUYER.value],
        )
        try:
            account.id = self._store.create_user(account)
        except IntegrityError:
            # A concurrent first login through the provider created the account
            existing = self._store.get_by_email(profile.email)
            if existing is None:
                raise
            logger.warning("OAuth2 registration race for existing email: %s", profile.email)
            return existing
        logger.info("Created new user %s from %s profile", account.email, profile.provider.value)
        return account


# ---------------------------------------------------------------------------
# One-time code exchange
# ---------------------------------------------------------------------------


class OAuthCodeExchange:
    """Single-use, short-lived codes standing in for tokens on the redirect."""

    def __init__(self, ttl_seconds: int = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._pending: dict[str, tuple[AuthResult, float]] = {}
        self._lock = threading.Lock()

    def issue(self, result: AuthResult) -> str:
        code = secrets.token_urlsafe(32)
        with self._lock:
            self._purge()
            self._pending[code] = (result, self._clock() + self._ttl)
        return code

    def redeem(self, code: Optional[str]) -> AuthResult | None:
        """Return the parked result once. Unknown, reused and expired codes give None."""
        if not code:
            return None
        with self._lock:
            entry = self._pending.pop(code, None)
            self._purge()
        if entry is None:
            return None
        result, expires_at = entry
        if expires_at <= self._clock():
            return None
        return result

    def _purge(self) -> None:
        # Caller holds self._lock
        now = self._clock()
        for code in [c for c, (_, exp) in self._pending.items() if exp <= now]:
            del self._pending[code]
