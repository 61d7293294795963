"""
api/ratelimit.py -- Per-route rate limiting as a FastAPI dependency.

Each route names its endpoint class explicitly:

    @router.post("/auth/login", dependencies=[Depends(rate_limit(RateLimitClass.LOGIN))])

The dependency consumes one token from the RateLimiter on app.state. On
admission it adds X-RateLimit-Limit / -Remaining / -Policy headers to the
response and records them on request.state, where the error handlers in
api/main.py pick them up. On denial it raises RateLimitedError, which
api/main.py turns into a 429 with Retry-After.

Identity: the client IP (auth.ratelimit.client_ip). With per_user=True, an
authenticated bearer account is keyed as "user:<id>" instead, so a user is
throttled the same way from every address.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request, Response

from auth.dependencies import try_get_current_account
from auth.exceptions import RateLimitedError
from auth.ratelimit import RateLimitClass, RateLimiter, client_ip, user_identity


def rate_limit(limit_class: RateLimitClass, per_user: bool = False) -> Callable[[Request, Response], None]:
    def dependency(request: Request, response: Response) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter

        identity = None
        if per_user:
            account = try_get_current_account(request)
            if account is not None and account.id is not None:
                identity = user_identity(account.id)
        if identity is None:
            identity = client_ip(request)

        limit = limiter.capacity(limit_class)
        if not limiter.is_allowed(limit_class, identity):
            raise RateLimitedError(
                limit_class.value,
                retry_after=limiter.seconds_until_refill(limit_class, identity),
                limit=limit,
            )
        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(limiter.remaining_tokens(limit_class, identity)),
            "X-RateLimit-Policy": limit_class.value,
        }
        # Error handlers build fresh responses and copy these from request.state
        request.state.rate_limit_headers = headers
        response.headers.update(headers)

    return dependency
