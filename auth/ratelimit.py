"""
auth/ratelimit.py -- Token-bucket admission control per (endpoint class, identity).

Algorithm:
  Each key "<CLASS>:<identity>" owns a TokenBucket that starts full
  (`capacity` tokens). Every admitted request consumes one token. Refill is
  interval-based: once per full `refill_period`, `refill_tokens` tokens are
  added back, never exceeding capacity. Partial periods add nothing, so a
  burst that drains the bucket waits for the next period boundary.

Concurrency:
  BucketCache.get_or_create() runs under the cache lock, so two concurrent
  first requests for the same key receive the same bucket. Consumption runs
  under the bucket's own lock, so a single remaining token is handed out
  exactly once.

Failure mode:
  The limiter never raises to its callers. A failure while loading or
  creating a bucket is logged and answered with a fresh bucket -- an internal
  error must not turn into a denial of service. Turning a denial into an HTTP
  429 is the caller's job (api/ratelimit.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from enum import Enum

from slowapi.util import get_remote_address
from starlette.requests import Request

from core.config import BucketSpec, RateLimitSettings

logger = logging.getLogger("localbite.auth.ratelimit")

MonotonicClock = Callable[[], float]


class RateLimitClass(str, Enum):
    GLOBAL = "GLOBAL"
    LOGIN = "LOGIN"
    REGISTER = "REGISTER"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    ADMIN = "ADMIN"


def spec_for(settings: RateLimitSettings, limit_class: RateLimitClass) -> BucketSpec:
    return {
        RateLimitClass.GLOBAL: settings.global_limit,
        RateLimitClass.LOGIN: settings.login,
        RateLimitClass.REGISTER: settings.register,
        RateLimitClass.EMAIL_VERIFICATION: settings.email_verification,
        RateLimitClass.PASSWORD_RESET: settings.password_reset,
        RateLimitClass.ADMIN: settings.admin,
    }[limit_class]


# ---------------------------------------------------------------------------
# Bucket
# ---------------------------------------------------------------------------


class TokenBucket:
    def __init__(self, spec: BucketSpec, clock: MonotonicClock = time.monotonic) -> None:
        self.capacity = spec.capacity
        self.refill_tokens = spec.refill_tokens
        self.refill_period = float(spec.refill_period_seconds)
        self._clock = clock
        self._tokens = spec.capacity
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        # Caller holds self._lock
        elapsed = self._clock() - self._last_refill
        periods = int(elapsed // self.refill_period)
        if periods <= 0:
            return
        self._tokens = min(self.capacity, self._tokens + periods * self.refill_tokens)
        self._last_refill += periods * self.refill_period

    def try_consume(self, tokens: int = 1) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def available_tokens(self) -> int:
        with self._lock:
            self._refill()
            return self._tokens


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class BucketCache:
    """Bounded LRU map of buckets with access-based expiry.

    An entry not touched for `expire_after_access` seconds is dropped on the
    next lookup of that key or when the cache is pruned. When full, the least
    recently accessed entry is evicted.
    """

    def __init__(
        self,
        maximum_size: int,
        expire_after_access: float,
        clock: MonotonicClock = time.monotonic,
    ) -> None:
        self.maximum_size = maximum_size
        self.expire_after_access = expire_after_access
        self._clock = clock
        self._entries: OrderedDict[str, tuple[TokenBucket, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get_or_create(self, key: str, factory: Callable[[], TokenBucket]) -> TokenBucket:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and now - entry[1] <= self.expire_after_access:
                bucket = entry[0]
            else:
                bucket = factory()
            self._entries[key] = (bucket, now)
            self._entries.move_to_end(key)
            self._evict(now)
            return bucket

    def _evict(self, now: float) -> None:
        # Caller holds self._lock. Oldest-accessed entries sit at the front.
        while self._entries:
            key, (_, accessed) = next(iter(self._entries.items()))
            if len(self._entries) > self.maximum_size or now - accessed > self.expire_after_access:
                del self._entries[key]
            else:
                break

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Token-bucket limiter keyed by "<CLASS>:<identity>".

    Usage:
        limiter = RateLimiter(settings.rate_limit)
        if not limiter.is_allowed(RateLimitClass.LOGIN, client_ip(request)):
            retry = limiter.seconds_until_refill(RateLimitClass.LOGIN, client_ip(request))
    """

    def __init__(self, settings: RateLimitSettings, clock: MonotonicClock = time.monotonic) -> None:
        self._settings = settings
        self._clock = clock
        self._cache = BucketCache(
            maximum_size=settings.cache_maximum_size,
            expire_after_access=settings.cache_expire_after_access_minutes * 60,
            clock=clock,
        )
        logger.info(
            "Rate limiting cache initialized with max size: %d, expiry: %d minutes",
            settings.cache_maximum_size,
            settings.cache_expire_after_access_minutes,
        )

    def spec(self, limit_class: RateLimitClass) -> BucketSpec:
        return spec_for(self._settings, limit_class)

    def capacity(self, limit_class: RateLimitClass) -> int:
        return self.spec(limit_class).capacity

    def _create_bucket(self, limit_class: RateLimitClass) -> TokenBucket:
        return TokenBucket(self.spec(limit_class), clock=self._clock)

    def _bucket(self, limit_class: RateLimitClass, identity: str) -> TokenBucket:
        key = f"{limit_class.value}:{identity}"
        try:
            return self._cache.get_or_create(key, lambda: self._create_bucket(limit_class))
        except Exception:
            logger.exception("Failed to load rate limit bucket for key %s; issuing a fresh bucket", key)
            return self._create_bucket(limit_class)

    def is_allowed(self, limit_class: RateLimitClass, identity: str) -> bool:
        bucket = self._bucket(limit_class, identity)
        allowed = bucket.try_consume(1)
        if allowed:
            logger.debug(
                "Request allowed - key: %s:%s, remaining tokens: %d",
                limit_class.value,
                identity,
                bucket.available_tokens(),
            )
        else:
            logger.warning("Rate limit exceeded - key: %s:%s", limit_class.value, identity)
        return allowed

    def remaining_tokens(self, limit_class: RateLimitClass, identity: str) -> int:
        return self._bucket(limit_class, identity).available_tokens()

    def seconds_until_refill(self, limit_class: RateLimitClass, identity: str) -> int:
        """0 while tokens remain; otherwise the class's full refill period."""
        if self.remaining_tokens(limit_class, identity) > 0:
            return 0
        return self.spec(limit_class).refill_period_seconds


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

_FORWARDING_HEADERS = ("X-Forwarded-For", "X-Real-IP", "X-Forwarded")


def client_ip(request: Request) -> str:
    """Best-effort client address: proxy headers first, then the direct peer.

    X-Forwarded-For may hold a chain ("client, proxy1, proxy2"); the first
    entry is the original client. Empty values and the literal "unknown" are
    skipped.
    """
    for header in _FORWARDING_HEADERS:
        value = request.headers.get(header, "")
        if header == "X-Forwarded-For":
            value = value.split(",")[0]
        value = value.strip()
        if value and value.lower() != "unknown":
            return value
    return get_remote_address(request)


def user_identity(user_id: int | str) -> str:
    return f"user:{user_id}"
