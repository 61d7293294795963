"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only the Authorization: Bearer <token> header is accepted. The token must be
an access token (refresh tokens are refused here; they are only good for
POST /api/v1/auth/refresh), must validate against the account named in its
subject with a matching user_id claim, and that account must still be
eligible (verified, unlocked, enabled). Locking or disabling an account
therefore cuts off its outstanding access tokens immediately.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_account() and raises AuthorizationError
(HTTP 403 via api/main.py) if the account lacks the ADMIN role.

The resolved account is cached on request.state so the rate-limit
dependency and the route share one lookup.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.exceptions import AuthorizationError
from auth.models import Account, RoleName

_UNSET = object()


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request from its Bearer header.

    Returns the Account on success, None on any failure. Never raises.
    """
    cached = getattr(request.state, "account", _UNSET)
    if cached is not _UNSET:
        return cached

    account: Account | None = None
    token = _bearer_token(request)
    if token:
        codec = request.app.state.token_codec
        if not codec.is_refresh_token(token):
            email = codec.extract_subject(token)
            candidate = request.app.state.user_store.get_by_email(email) if email else None
            if (
                candidate is not None
                and candidate.is_eligible
                and codec.validate(token, candidate)
                and codec.extract_user_id(token) == candidate.id
            ):
                account = candidate

    request.state.account = account
    return account


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account


def require_admin(request: Request) -> Account:
    """Require the ADMIN role. Raises HTTP 401 if unauthenticated, 403 if not admin."""
    account = get_current_account(request)
    if RoleName.ADMIN.value not in account.roles:
        raise AuthorizationError()
    return account
