"""
api/routes/v1/auth.py -- Registration, login, token refresh and email verification.

Routes:
  POST /api/v1/auth/register             -- create an unverified account; 201, no tokens
  POST /api/v1/auth/login                -- password login; access + refresh tokens
  POST /api/v1/auth/refresh              -- trade a refresh token for a new pair
  POST /api/v1/auth/verify-email         -- redeem a verification token
  POST /api/v1/auth/resend-verification  -- issue a new verification token
  GET  /api/v1/auth/verification-status  -- is this email verified?
  POST /api/v1/auth/manual-verify        -- demo/test only; 404 unless enabled
  GET  /api/v1/auth/me                   -- current account (requires auth)
  GET  /api/v1/auth/health               -- liveness (never rate limited)

Security:
  [C1] AuthService.login() runs one uniform-cost path -- use it, never inline
       a lookup + password compare here.
  [H2] Every route except health passes through rate_limit() first.
  [M5] Cache-Control: no-store on login and refresh responses.
  Enumeration: duplicate registration, unknown-email resend and every login
  failure return the same shapes as their innocent counterparts.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy import text

from api.models import (
    AuthResponse,
    EmailRequest,
    HealthResponse,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    UserInfo,
    VerificationStatusResponse,
    VerifyEmailRequest,
)
from api.ratelimit import rate_limit
from auth.dependencies import get_current_account
from auth.exceptions import ValidationError
from auth.models import Account, RegistrationRequest
from auth.ratelimit import RateLimitClass, client_ip
from auth.service import AuthService
from auth.verification import VerificationService

logger = logging.getLogger("localbite.api.auth")

VERSION = "1.0.0"

# Auth policy:
# - register, login, refresh, verify-email, resend-verification,
#   verification-status, manual-verify:  public
# - me:                                   requires auth (get_current_account)
# - health:                               public, not rate limited
router = APIRouter()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def health_status(request: Request) -> HealthResponse:
    """Liveness plus a database round-trip."""
    database = "ok"
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check database query failed")
        database = "error"
    return HealthResponse(
        status="UP" if database == "ok" else "DOWN",
        version=VERSION,
        components={"app": "ok", "database": database},
    )


router.add_api_route("/auth/health", health_status, methods=["GET"], response_model=HealthResponse)


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=AuthResponse,
    status_code=201,
    dependencies=[Depends(rate_limit(RateLimitClass.REGISTER))],
)
def register(request: Request, body: RegisterRequest) -> AuthResponse:
    """Create an unverified account and send a verification email.

    An already-registered email gets the same 201 with null token and user
    fields, and no row is written.
    """
    service: AuthService = request.app.state.auth_service
    result = service.register(
        RegistrationRequest(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            role=body.role,
            phone_number=body.phone_number,
        ),
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return AuthResponse.from_result(result)


@router.post(
    "/auth/login",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limit(RateLimitClass.LOGIN, per_user=True))],
)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Every rejection -- unknown email, wrong password, unverified, locked,
    disabled -- is the same 401 body ("Invalid email or password").
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(body.email, body.password)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse.from_result(result)


@router.post(
    "/auth/refresh",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limit(RateLimitClass.LOGIN))],
)
def refresh(request: Request, response: Response, body: RefreshRequest) -> AuthResponse:
    service: AuthService = request.app.state.auth_service
    result = service.refresh(body.refresh_token)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse.from_result(result)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post(
    "/auth/verify-email",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(RateLimitClass.EMAIL_VERIFICATION))],
)
def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    verification: VerificationService = request.app.state.verification
    if not verification.verify_email(body.token):
        raise ValidationError("Invalid or expired verification token", field="token")
    return MessageResponse(message="Email verified successfully! You can now log in.")


@router.post(
    "/auth/resend-verification",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(RateLimitClass.EMAIL_VERIFICATION))],
)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    verification: VerificationService = request.app.state.verification
    verification.resend_verification_email(body.email)
    return MessageResponse(
        message="If an unverified account exists for that email, a new verification email has been sent."
    )


@router.get(
    "/auth/verification-status",
    response_model=VerificationStatusResponse,
    dependencies=[Depends(rate_limit(RateLimitClass.GLOBAL))],
)
def verification_status(
    request: Request,
    email: str = Query(min_length=3, max_length=255),
) -> VerificationStatusResponse:
    verification: VerificationService = request.app.state.verification
    return VerificationStatusResponse(email=email, email_verified=verification.is_email_verified(email))


@router.post(
    "/auth/manual-verify",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(RateLimitClass.EMAIL_VERIFICATION))],
)
def manual_verify(request: Request, body: EmailRequest) -> MessageResponse:
    """Mark an email verified without a token. Demo and test deployments only."""
    if not request.app.state.settings.manual_verification_enabled:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Not Found"})
    verification: VerificationService = request.app.state.verification
    verification.manually_verify_email(body.email)
    return MessageResponse(message="Email verified successfully")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/auth/me",
    response_model=UserInfo,
    dependencies=[Depends(rate_limit(RateLimitClass.GLOBAL, per_user=True))],
)
def me(request: Request, current: Account = Depends(get_current_account)) -> UserInfo:
    """Return the public profile of the authenticated account."""
    service: AuthService = request.app.state.auth_service
    return UserInfo.from_summary(service.current_user(current.email))
