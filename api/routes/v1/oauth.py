"""
api/routes/v1/oauth.py -- OAuth2 login through Google and Facebook.

Routes:
  GET  /api/v1/auth/oauth2/providers            -- configured providers (public)
  GET  /api/v1/auth/oauth2/authorize/{provider} -- redirect to the provider
  GET  /api/v1/auth/oauth2/callback/{provider}  -- provider redirects back here
  POST /api/v1/auth/oauth2/exchange             -- trade a one-time code for tokens

Flow:
  1. The frontend sends the browser to /authorize/{provider}.
  2. authlib stores the OAuth state in the session and redirects.
  3. /callback exchanges the authorization code (authlib checks state),
     fetches the user-info payload and hands it to OAuthLinker.
  4. The AuthResult is parked under a one-time code and the browser goes to
     <frontend_url>/auth/oauth2/redirect?code=... -- tokens never appear in
     a URL, browser history or proxy log.
  5. The frontend POSTs the code to /exchange within its lifetime and gets
     the tokens in the response body.

Any failure in steps 3-4 redirects to the same frontend page with
?error=oauth_failed; the cause is logged server-side only.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.models import AuthResponse, OAuthExchangeRequest, OAuthProviderInfo
from api.ratelimit import rate_limit
from auth.exceptions import AuthenticationFailedError, AuthServiceError, NotFoundError
from auth.oauth import OAuthCodeExchange, OAuthLinker, fetch_user_info, get_enabled_providers, parse_provider
from auth.ratelimit import RateLimitClass

logger = logging.getLogger("localbite.api.oauth")

router = APIRouter(prefix="/auth/oauth2")


def _frontend_redirect(request: Request, **params: str) -> RedirectResponse:
    base = request.app.state.settings.frontend_url.rstrip("/")
    resp = RedirectResponse(f"{base}/auth/oauth2/redirect?{urlencode(params)}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _client_for(request: Request, provider_name: str):
    """Resolve a registered authlib client or raise.

    Unsupported names are a ValidationError (400); supported but
    unconfigured providers are a NotFoundError (404).
    """
    provider = parse_provider(provider_name)
    client = request.app.state.oauth.create_client(provider.value.lower())
    if client is None:
        raise NotFoundError(f"OAuth2 provider is not configured: {provider_name}")
    return provider, client


@router.get(
    "/providers",
    response_model=list[OAuthProviderInfo],
    dependencies=[Depends(rate_limit(RateLimitClass.GLOBAL))],
)
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured providers. Empty when no OAuth credentials are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings.oauth)]


@router.get("/authorize/{provider}", dependencies=[Depends(rate_limit(RateLimitClass.GLOBAL))])
async def authorize(request: Request, provider: str) -> Response:
    _, client = _client_for(request, provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/callback/{provider}", name="oauth_callback", dependencies=[Depends(rate_limit(RateLimitClass.LOGIN))])
async def callback(request: Request, provider: str) -> RedirectResponse:
    kind, client = _client_for(request, provider)
    linker: OAuthLinker = request.app.state.oauth_linker
    codes: OAuthCodeExchange = request.app.state.oauth_codes

    try:
        token = await client.authorize_access_token(request)
        attributes = await fetch_user_info(client, kind, token)
    except (OAuthError, httpx.HTTPError):
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _frontend_redirect(request, error="oauth_failed")

    try:
        result = await run_in_threadpool(linker.link, kind, attributes)
    except AuthServiceError as exc:
        logger.warning("OAuth2 login via %r rejected: %s", provider, exc.message)
        return _frontend_redirect(request, error="oauth_failed")

    return _frontend_redirect(request, code=codes.issue(result))


@router.post(
    "/exchange",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limit(RateLimitClass.LOGIN))],
)
def exchange(request: Request, response: Response, body: OAuthExchangeRequest) -> AuthResponse:
    """Redeem a one-time code from the callback redirect. Each code works once."""
    codes: OAuthCodeExchange = request.app.state.oauth_codes
    result = codes.redeem(body.code)
    if result is None:
        raise AuthenticationFailedError()
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse.from_result(result)
