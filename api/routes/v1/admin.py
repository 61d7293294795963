"""
api/routes/v1/admin.py -- Administrative account lifecycle endpoints.

Routes (all require the ADMIN role):
  POST /api/v1/auth/admin/lock-account
  POST /api/v1/auth/admin/unlock-account
  POST /api/v1/auth/admin/enable-account
  POST /api/v1/auth/admin/disable-account
  POST /api/v1/auth/admin/reset-failed-attempts
  GET  /api/v1/auth/admin/account-status?email=...

Router-level dependencies run in declaration order: the ADMIN rate limit
first (keyed by the caller's user id when a valid bearer token is present,
otherwise by IP), then require_admin (401 / 403).

Unknown email -> 404. A transition to the state the account is already in
(locking a locked account, ...) -> 409.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import AccountStatusResponse, AdminAccountRequest, MessageResponse, ResetAttemptsResponse
from api.ratelimit import rate_limit
from auth.admin import AccountAdministration
from auth.dependencies import require_admin
from auth.ratelimit import RateLimitClass

router = APIRouter(
    prefix="/auth/admin",
    dependencies=[
        Depends(rate_limit(RateLimitClass.ADMIN, per_user=True)),
        Depends(require_admin),
    ],
)


def _admin(request: Request) -> AccountAdministration:
    return request.app.state.admin


@router.post("/lock-account", response_model=MessageResponse)
def lock_account(body: AdminAccountRequest, admin: AccountAdministration = Depends(_admin)) -> MessageResponse:
    return MessageResponse(message=admin.lock(body.email, body.reason))


@router.post("/unlock-account", response_model=MessageResponse)
def unlock_account(body: AdminAccountRequest, admin: AccountAdministration = Depends(_admin)) -> MessageResponse:
    return MessageResponse(message=admin.unlock(body.email))


@router.post("/enable-account", response_model=MessageResponse)
def enable_account(body: AdminAccountRequest, admin: AccountAdministration = Depends(_admin)) -> MessageResponse:
    return MessageResponse(message=admin.enable(body.email))


@router.post("/disable-account", response_model=MessageResponse)
def disable_account(body: AdminAccountRequest, admin: AccountAdministration = Depends(_admin)) -> MessageResponse:
    return MessageResponse(message=admin.disable(body.email, body.reason))


@router.post("/reset-failed-attempts", response_model=ResetAttemptsResponse)
def reset_failed_attempts(
    body: AdminAccountRequest,
    admin: AccountAdministration = Depends(_admin),
) -> ResetAttemptsResponse:
    previous = admin.reset_failed_attempts(body.email)
    return ResetAttemptsResponse(
        message=f"Failed login attempts reset (was: {previous})",
        previous_attempts=previous,
    )


@router.get("/account-status", response_model=AccountStatusResponse)
def account_status(
    email: str = Query(min_length=3, max_length=255),
    admin: AccountAdministration = Depends(_admin),
) -> AccountStatusResponse:
    return AccountStatusResponse.from_status(admin.get_status(email))
