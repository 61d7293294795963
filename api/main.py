"""
api/main.py -- FastAPI application factory for LocalBite Auth.

create_app(settings) builds a fully wired app from one Settings object.
Nothing in api/ or auth/ reads configuration on its own; tests build an
app from their own Settings and production does it once in asgi.py.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SessionMiddleware     -- holds authlib's OAuth state between redirect and callback

Rate limiting is not middleware: each route declares its endpoint class
through api.ratelimit.rate_limit().

Lifespan handles startup (store, signing key, services) and shutdown (email
workers, DB connection) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import VERSION, health_status
from api.routes.v1.auth import router as auth_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.password import router as password_router
from auth.admin import AccountAdministration
from auth.exceptions import AuthServiceError, RateLimitedError
from auth.oauth import OAuthCodeExchange, OAuthLinker, build_oauth
from auth.passwords import BcryptHasher
from auth.policy import PasswordPolicy
from auth.ratelimit import RateLimiter
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenCodec
from auth.verification import BackgroundEmailDispatcher, LoggingEmailDispatcher, VerificationService
from core.config import Settings

logger = logging.getLogger("localbite.api")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


def _build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build every service from `settings` and park it on app.state.

        Startup order matters:
          1. TokenCodec first -- a bad signing key raises ConfigurationError
             before the store is even opened, so the app never serves.
          2. Store second -- everything else reads or writes through it.
          3. Services last, wired leaf-first.
        """
        logger.info("LocalBite Auth starting up")
        app.state.token_codec = TokenCodec(settings.jwt)
        app.state.user_store = UserStore(db_url=settings.database_url)

        hasher = BcryptHasher(rounds=settings.bcrypt_rounds)
        app.state.password_policy = PasswordPolicy(settings.password_policy, app.state.user_store, hasher)
        app.state.email_dispatcher = BackgroundEmailDispatcher(LoggingEmailDispatcher(settings.frontend_url))
        app.state.verification = VerificationService(app.state.user_store, app.state.email_dispatcher)
        app.state.auth_service = AuthService(
            app.state.user_store,
            hasher,
            app.state.token_codec,
            app.state.password_policy,
            app.state.verification,
            max_failed_attempts=settings.password_policy.max_failed_attempts,
        )
        app.state.admin = AccountAdministration(app.state.user_store)
        app.state.oauth_linker = OAuthLinker(app.state.user_store, app.state.auth_service)
        logger.info(
            "Auth initialized (users=%d, enforcement=%s)",
            app.state.user_store.count_users(),
            settings.password_policy.enforcement_level.value,
        )

        yield

        # Shutdown
        app.state.email_dispatcher.shutdown(wait=False)
        app.state.user_store.close()
        logger.info("LocalBite Auth shutdown complete")

    return lifespan


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _with_rate_limit_headers(request: Request, response: JSONResponse) -> JSONResponse:
    """Copy headers recorded by an admitting rate_limit dependency onto response."""
    response.headers.update(getattr(request.state, "rate_limit_headers", {}))
    return response


async def auth_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Map an auth engine error to its status code and envelope.

    Authentication failures always produce the same body, whatever the
    underlying reason. Auth errors are never cached by intermediaries.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(**exc.to_dict())).model_dump(exclude_none=True),
    )
    response.headers["Cache-Control"] = "no-store"
    _with_rate_limit_headers(request, response)
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(exc.retry_after)
        response.headers["X-RateLimit-Limit"] = str(exc.limit)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Reset"] = str(int(time.time()) + exc.retry_after)
        response.headers["X-RateLimit-Policy"] = exc.limit_class
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured field errors when the body or query fails validation."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(
            ErrorResponse(
                error=ErrorDetail(
                    code="validation_error",
                    message="Request validation failed.",
                    detail=errors,
                )
            ).model_dump()
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a dict detail. When detail is already
    a structured dict, use it directly as the error field rather than
    stringifying it -- str(dict) produces a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return _with_rate_limit_headers(
            request, JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
        )
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )
    return _with_rate_limit_headers(request, response)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the server log only, never
    to the response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings) -> FastAPI:
    _configure_logging(settings.log_level)

    app = FastAPI(
        title="LocalBite Auth API",
        description="Registration, login, email verification, OAuth2 and account security for LocalBite.",
        version=VERSION,
        lifespan=_build_lifespan(settings),
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings
    # Process-local and stateful: one limiter and one exchange per app.
    app.state.rate_limiter = RateLimiter(settings.rate_limit)
    app.state.oauth = build_oauth(settings.oauth)
    app.state.oauth_codes = OAuthCodeExchange(ttl_seconds=settings.oauth.exchange_code_ttl_seconds)

    # -----------------------------------------------------------------------
    # Middleware stack
    #
    # Starlette wraps middleware in reverse registration order, so the last
    # add_middleware() call is the outermost layer. Register innermost first.
    # -----------------------------------------------------------------------

    # SessionMiddleware is required by authlib to store the OAuth state value
    # between the authorization redirect and the callback.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        same_site="lax",
        https_only=not settings.debug,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Policy"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    # -----------------------------------------------------------------------
    # Request logging middleware
    #
    # Every request passes through this coroutine before reaching any route
    # handler. Wall-clock time is captured around call_next for latency.
    # -----------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    app.add_exception_handler(AuthServiceError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # -----------------------------------------------------------------------
    # Routers
    # -----------------------------------------------------------------------

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(password_router, prefix="/api/v1", tags=["Password Policy"])
    app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
    app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth2"])

    # Defined here (not in a router) so it is always reachable. No rate
    # limit -- load balancers and monitors must not be throttled.
    app.add_api_route("/health", health_status, methods=["GET"], response_model=HealthResponse, tags=["Health"])

    return app
