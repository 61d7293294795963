"""
tests/test_api_routes.py -- Integration tests for the auth, password, admin and OAuth routes.

These tests exercise the full stack: FastAPI routing -> rate limit and auth
dependencies -> AuthService / UserStore -> response model serialization and
the shared error envelope. Unit tests of the services would miss the
dependency wiring and the exception handlers.

Coverage:
  - Registration: 201 without tokens, duplicate 201 with null user, 400 for
    bad role and policy violations, 422 envelope for malformed bodies
  - Login: 200 with tokens and no-store; every failure is a byte-identical 401;
    password whitespace is significant, email whitespace is trimmed
  - Refresh, /me (user_id claim must match), verification endpoints,
    manual-verify gating
  - Password policy endpoints
  - Admin: 401 / 403 gating, lock cuts off outstanding tokens, 404 / 409
  - OAuth: empty provider list, unconfigured / unsupported providers, exchange

Fixtures used (from conftest.py):
  - api_client: module-scoped TestClient with generous rate limits and
    manual verification enabled
  - admin_headers: bearer header for a verified ADMIN account
"""

from __future__ import annotations

import dataclasses
import uuid

from fastapi.testclient import TestClient

from api.main import create_app
from tests.conftest import STRONG_PASSWORD, bearer, create_verified_user, generous_rate_limits, make_settings


def _email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}@localbite.test"


def _register_body(email: str, **overrides) -> dict:
    body = {
        "email": email,
        "password": STRONG_PASSWORD,
        "first_name": "Test",
        "last_name": "User",
        "role": "BUYER",
    }
    body.update(overrides)
    return body


class TestRegisterRoute:
    def test_register_returns_201_without_tokens(self, api_client: TestClient) -> None:
        email = _email()
        resp = api_client.post("/api/v1/auth/register", json=_register_body(email, role="SELLER"))
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["access_token"] is None
        assert data["refresh_token"] is None
        assert data["user"]["email"] == email
        assert data["user"]["email_verified"] is False
        assert data["user"]["roles"] == ["ROLE_SELLER"]

    def test_duplicate_registration_looks_like_success(self, api_client: TestClient) -> None:
        email = _email()
        api_client.post("/api/v1/auth/register", json=_register_body(email))
        resp = api_client.post("/api/v1/auth/register", json=_register_body(email, first_name="Mallory"))
        assert resp.status_code == 201
        assert resp.json()["user"] is None
        assert api_client.app.state.user_store.get_by_email(email).first_name == "Test"

    def test_admin_role_is_rejected(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/register", json=_register_body(_email(), role="ADMIN"))
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Invalid role specified"
        assert error["field"] == "role"

    def test_weak_password_lists_violations(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/register", json=_register_body(_email(), password="password"))
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "password_policy_violation"
        assert "Password is too common and easily guessable" in error["violations"]
        assert error["requirements"].startswith("Password requirements: 10-128 characters")

    def test_malformed_body_returns_422_envelope(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        fields = {item["field"] for item in error["detail"]}
        assert {"email", "first_name", "last_name"} <= fields


class TestLoginRoute:
    def test_login_success(self, api_client: TestClient) -> None:
        email = _email()
        create_verified_user(api_client.app, email)
        resp = api_client.post("/api/v1/auth/login", json={"email": email, "password": STRONG_PASSWORD})
        assert resp.status_code == 200, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 3600
        assert data["access_token"] and data["refresh_token"]
        assert data["user"]["email"] == email

    def test_failures_are_byte_identical(self, api_client: TestClient) -> None:
        verified = _email("verified")
        create_verified_user(api_client.app, verified)
        unverified = _email("unverified")
        api_client.post("/api/v1/auth/register", json=_register_body(unverified))

        bodies = []
        for email, password in [
            (_email("nobody"), STRONG_PASSWORD),
            (verified, "Wr0ng!Passw0rd"),
            (unverified, STRONG_PASSWORD),
        ]:
            resp = api_client.post("/api/v1/auth/login", json={"email": email, "password": password})
            assert resp.status_code == 401
            bodies.append(resp.content)
        assert bodies[0] == bodies[1] == bodies[2]
        assert api_client.post(
            "/api/v1/auth/login", json={"email": verified, "password": "x"}
        ).json() == {"error": {"code": "authentication_failed", "message": "Invalid email or password"}}

    def test_password_whitespace_is_kept(self, api_client: TestClient) -> None:
        email = _email()
        padded = f" {STRONG_PASSWORD} "
        resp = api_client.post("/api/v1/auth/register", json=_register_body(f"  {email} ", password=padded))
        assert resp.status_code == 201
        assert resp.json()["user"]["email"] == email
        api_client.post("/api/v1/auth/manual-verify", json={"email": email})

        assert api_client.post("/api/v1/auth/login", json={"email": email, "password": padded}).status_code == 200
        assert api_client.post("/api/v1/auth/login", json={"email": email, "password": STRONG_PASSWORD}).status_code == 401

    def test_register_verify_login_walkthrough(self, api_client: TestClient) -> None:
        email = _email()
        assert api_client.post("/api/v1/auth/register", json=_register_body(email)).status_code == 201
        assert api_client.post("/api/v1/auth/login", json={"email": email, "password": STRONG_PASSWORD}).status_code == 401

        resp = api_client.post("/api/v1/auth/manual-verify", json={"email": email})
        assert resp.status_code == 200
        assert resp.json() == {"message": "Email verified successfully"}

        resp = api_client.post("/api/v1/auth/login", json={"email": email, "password": STRONG_PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["user"]["email_verified"] is True

    def test_refresh(self, api_client: TestClient) -> None:
        email = _email()
        create_verified_user(api_client.app, email)
        tokens = api_client.post("/api/v1/auth/login", json={"email": email, "password": STRONG_PASSWORD}).json()

        resp = api_client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["access_token"]

        resp = api_client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})
        assert resp.status_code == 401


class TestMeRoute:
    def test_me_requires_auth(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.json() == {"error": {"code": "unauthorized", "message": "Authentication required."}}

    def test_me_with_bearer(self, api_client: TestClient) -> None:
        email = _email()
        account = create_verified_user(api_client.app, email, first_name="Priya")
        resp = api_client.get("/api/v1/auth/me", headers=bearer(api_client.app, account))
        assert resp.status_code == 200
        data = resp.json()
        assert data["email"] == email
        assert data["first_name"] == "Priya"
        assert data["roles"] == ["ROLE_BUYER"]
        assert "hashed_password" not in data

    def test_refresh_token_is_not_a_bearer(self, api_client: TestClient) -> None:
        account = create_verified_user(api_client.app, _email())
        refresh = api_client.app.state.token_codec.generate_refresh_token(account)
        resp = api_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {refresh}"})
        assert resp.status_code == 401

    def test_garbage_bearer(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401

    def test_token_for_other_user_id_is_refused(self, api_client: TestClient) -> None:
        account = create_verified_user(api_client.app, _email())
        stale = dataclasses.replace(account, id=account.id + 1000)
        resp = api_client.get("/api/v1/auth/me", headers=bearer(api_client.app, stale))
        assert resp.status_code == 401


class TestVerificationRoutes:
    def test_bad_token(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/verify-email", json={"token": "0" * 32})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid or expired verification token"

    def test_resend_is_enumeration_safe(self, api_client: TestClient) -> None:
        known = _email()
        api_client.post("/api/v1/auth/register", json=_register_body(known))
        a = api_client.post("/api/v1/auth/resend-verification", json={"email": known})
        b = api_client.post("/api/v1/auth/resend-verification", json={"email": _email("ghost")})
        assert a.status_code == b.status_code == 200
        assert a.json() == b.json()

    def test_verification_status(self, api_client: TestClient) -> None:
        email = _email()
        create_verified_user(api_client.app, email)
        resp = api_client.get("/api/v1/auth/verification-status", params={"email": email})
        assert resp.json() == {"email": email, "email_verified": True}

    def test_manual_verify_unknown_email(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/manual-verify", json={"email": _email("ghost")})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_manual_verify_disabled_is_404(self) -> None:
        app = create_app(make_settings(manual_verification_enabled=False, rate_limit=generous_rate_limits()))
        with TestClient(app) as client:
            resp = client.post("/api/v1/auth/manual-verify", json={"email": "a@x.com"})
        assert resp.status_code == 404


class TestPasswordRoutes:
    def test_check_password_strength(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/check-password-strength",
            json={"password": "Priya!Secure9", "first_name": "Priya"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is False
        assert data["violations"] == ["Password should not contain your first name"]
        assert data["suggestions"]

    def test_password_policy(self, api_client: TestClient) -> None:
        data = api_client.get("/api/v1/auth/password-policy").json()
        assert data["enforcement_level"] == "STRICT"
        assert data["min_length"] == 10
        assert data["allowed_special_chars"] == "!@#$%^&*()_+-=[]{}|;:,.<>?"

    def test_expiry_status(self, api_client: TestClient) -> None:
        assert api_client.get("/api/v1/auth/password-expiry-status").status_code == 401
        account = create_verified_user(api_client.app, _email())
        resp = api_client.get("/api/v1/auth/password-expiry-status", headers=bearer(api_client.app, account))
        assert resp.status_code == 200
        data = resp.json()
        assert data["expired"] is False
        assert data["action"] == "NO_ACTION_REQUIRED"


class TestAdminRoutes:
    def test_requires_auth(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/admin/account-status", params={"email": "a@x.com"})
        assert resp.status_code == 401

    def test_buyer_is_forbidden(self, api_client: TestClient) -> None:
        buyer = create_verified_user(api_client.app, _email())
        resp = api_client.post(
            "/api/v1/auth/admin/lock-account",
            json={"email": buyer.email},
            headers=bearer(api_client.app, buyer),
        )
        assert resp.status_code == 403
        assert resp.json() == {"error": {"code": "forbidden", "message": "Admin access required."}}
        assert resp.headers["Cache-Control"] == "no-store"

    def test_lock_cuts_off_existing_tokens(self, api_client: TestClient, admin_headers: dict) -> None:
        target = create_verified_user(api_client.app, _email())
        target_headers = bearer(api_client.app, target)
        assert api_client.get("/api/v1/auth/me", headers=target_headers).status_code == 200

        resp = api_client.post(
            "/api/v1/auth/admin/lock-account",
            json={"email": target.email, "reason": "fraud review"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json() == {"message": "Account locked successfully"}
        assert api_client.get("/api/v1/auth/me", headers=target_headers).status_code == 401

        again = api_client.post("/api/v1/auth/admin/lock-account", json={"email": target.email}, headers=admin_headers)
        assert again.status_code == 409
        assert again.json()["error"]["message"] == "Account is already locked"

        resp = api_client.post("/api/v1/auth/admin/unlock-account", json={"email": target.email}, headers=admin_headers)
        assert resp.status_code == 200
        assert api_client.get("/api/v1/auth/me", headers=target_headers).status_code == 200

    def test_disable_and_enable(self, api_client: TestClient, admin_headers: dict) -> None:
        target = create_verified_user(api_client.app, _email())
        body = {"email": target.email}
        assert api_client.post("/api/v1/auth/admin/disable-account", json=body, headers=admin_headers).json() == {
            "message": "Account disabled successfully"
        }
        login = api_client.post("/api/v1/auth/login", json={"email": target.email, "password": STRONG_PASSWORD})
        assert login.status_code == 401
        assert api_client.post("/api/v1/auth/admin/enable-account", json=body, headers=admin_headers).status_code == 200

    def test_reset_failed_attempts_and_status(self, api_client: TestClient, admin_headers: dict) -> None:
        target = create_verified_user(api_client.app, _email())
        for _ in range(2):
            api_client.post("/api/v1/auth/login", json={"email": target.email, "password": "Wr0ng!Passw0rd"})

        status = api_client.get(
            "/api/v1/auth/admin/account-status", params={"email": target.email}, headers=admin_headers
        ).json()
        assert status["failed_login_attempts"] == 2
        assert status["account_locked"] is False
        assert status["roles"] == ["ROLE_BUYER"]

        resp = api_client.post(
            "/api/v1/auth/admin/reset-failed-attempts", json={"email": target.email}, headers=admin_headers
        )
        assert resp.json() == {"message": "Failed login attempts reset (was: 2)", "previous_attempts": 2}

    def test_unknown_email(self, api_client: TestClient, admin_headers: dict) -> None:
        resp = api_client.post("/api/v1/auth/admin/unlock-account", json={"email": _email("ghost")}, headers=admin_headers)
        assert resp.status_code == 404


class TestOAuthRoutes:
    def test_no_providers_configured(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/oauth2/providers")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_unconfigured_provider_is_404(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/oauth2/authorize/google", follow_redirects=False)
        assert resp.status_code == 404

    def test_unsupported_provider_is_400(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/oauth2/authorize/github", follow_redirects=False)
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "provider"

    def test_exchange(self, api_client: TestClient) -> None:
        account = create_verified_user(api_client.app, _email())
        result = api_client.app.state.auth_service.issue_tokens(account)
        code = api_client.app.state.oauth_codes.issue(result)

        resp = api_client.post("/api/v1/auth/oauth2/exchange", json={"code": code})
        assert resp.status_code == 200
        assert resp.json()["access_token"] == result.access_token

        replay = api_client.post("/api/v1/auth/oauth2/exchange", json={"code": code})
        assert replay.status_code == 401
