"""
tests/conftest.py -- Shared test fixtures for LocalBite Auth.

This module provides:
  - make_settings(): isolated Settings (shared in-memory SQLite, bcrypt cost 4)
  - FrozenClock: a wall clock tests can move forward without sleeping
  - RecordingDispatcher: captures verification emails instead of logging them
  - store / services: unit-level fixtures wired from the real classes
  - api_client: TestClient around create_app() with generous rate limits

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Every call to make_settings() picks a fresh name so modules never share
state.

The DEBUG env var is set before any core import so a stray get_settings()
call generates a dev secret instead of raising.
"""

from __future__ import annotations

import base64
import os
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from auth.admin import AccountAdministration
from auth.models import Account, RoleName
from auth.passwords import BcryptHasher
from auth.policy import PasswordPolicy
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenCodec
from auth.verification import VerificationService
from core.config import BucketSpec, JwtSettings, RateLimitSettings, Settings

TEST_SECRET = base64.b64encode(b"localbite-test-signing-key-0123456789abcdef").decode("ascii")
STRONG_PASSWORD = "Str0ng!Pass"


def memory_db_url(prefix: str = "test_auth") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    """Build an isolated Settings object. Keyword overrides replace fields."""
    values = {
        "debug": True,
        "database_url": memory_db_url(),
        "bcrypt_rounds": 4,
        "manual_verification_enabled": True,
        "jwt": JwtSettings(secret=TEST_SECRET),
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def generous_rate_limits() -> RateLimitSettings:
    """Limits high enough that functional API tests never see a 429."""
    roomy = BucketSpec(capacity=1000, refill_tokens=1000, refill_period_minutes=1)
    return RateLimitSettings(
        global_limit=roomy,
        login=roomy,
        register=roomy,
        email_verification=roomy,
        password_reset=roomy,
        admin=roomy,
    )


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class RecordingDispatcher:
    """EmailDispatcher that remembers every (address, name, token) it was given."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str | None, str]] = []
        self.fail = fail

    def send_verification_email(self, address: str, name: str | None, token: str) -> None:
        if self.fail:
            raise RuntimeError("SMTP relay unavailable")
        self.sent.append((address, name, token))

    def last_token_for(self, address: str) -> str:
        return [token for to, _, token in self.sent if to == address][-1]


class MonotonicClock:
    """Float clock for the rate limiter and the OAuth code exchange."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore(memory_db_url("test_store"))
    yield s
    s.close()


@pytest.fixture
def hasher() -> BcryptHasher:
    return BcryptHasher(rounds=4)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def services(store, hasher, clock, dispatcher) -> SimpleNamespace:
    """Every engine service wired against one store and one frozen clock."""
    settings = make_settings()
    codec = TokenCodec(settings.jwt, clock=clock)
    policy = PasswordPolicy(settings.password_policy, store, hasher, clock=clock)
    verification = VerificationService(store, dispatcher, clock=clock)
    auth = AuthService(store, hasher, codec, policy, verification, clock=clock)
    return SimpleNamespace(
        settings=settings,
        store=store,
        hasher=hasher,
        clock=clock,
        dispatcher=dispatcher,
        codec=codec,
        policy=policy,
        verification=verification,
        auth=auth,
        admin=AccountAdministration(store, clock=clock),
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def create_verified_user(
    app,
    email: str,
    password: str = STRONG_PASSWORD,
    roles: list[str] | None = None,
    first_name: str = "Test",
    last_name: str = "User",
) -> Account:
    """Insert a verified, enabled account straight into the app's store."""
    store: UserStore = app.state.user_store
    roles = roles or [RoleName.BUYER.value]
    for role in roles:
        app.state.auth_service.resolve_role(role)
    now = datetime.now(timezone.utc)
    account = Account(
        email=email,
        hashed_password=BcryptHasher(rounds=4).hash(password),
        first_name=first_name,
        last_name=last_name,
        email_verified=True,
        created_at=now,
        updated_at=now,
        roles=roles,
    )
    account.id = store.create_user(account)
    return account


def bearer(app, account: Account) -> dict[str, str]:
    token = app.state.token_codec.generate_access_token(account)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient around a fresh app for the calling test module.

    The lifespan runs for real (store, codec, services), against a private
    in-memory database. Rate limits are raised so functional tests are not
    throttled; tests/test_rate_limit_api.py builds its own app with the
    default limits.
    """
    app = create_app(make_settings(rate_limit=generous_rate_limits()))
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="module")
def admin_headers(api_client: TestClient) -> dict[str, str]:
    admin = create_verified_user(api_client.app, f"admin-{uuid.uuid4().hex[:8]}@localbite.test", roles=["ADMIN"])
    return bearer(api_client.app, admin)
