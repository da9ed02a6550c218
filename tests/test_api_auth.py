"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

Runs through the real ASGI stack (TestClient, follow_redirects=False) so the
exception handlers, cookie attributes and session middleware are all live.

Coverage:
  - Signup / login / logout / refresh, including the full
    signup -> wrong password -> logout -> stale refresh scenario
  - Cookie attributes (HttpOnly, SameSite=strict, Max-Age per token)
  - 400 validation envelope listing the offending fields
  - OAuth authorize -> callback round trip through authlib, with the token and
    profile endpoints served by FakeOAuthProvider (state replay and forgery)
  - Rate limiting: signup and login share one budget per IP
"""

from __future__ import annotations

from collections.abc import Generator
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.oauth import PROVIDERS
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE

_SIGNUP = {"email": "a@x.com", "username": "alice", "password": "longenough1"}
_GOOGLE_PROFILE = {"id": "g-1", "email": "g@x.com", "verified_email": True, "name": "Gina"}


def _set_cookie_header(resp, name: str) -> str:
    return next(h for h in resp.headers.get_list("set-cookie") if h.startswith(f"{name}="))


class TestSignupAndLogin:
    def test_signup_returns_201_with_user_and_cookies(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/signup", json=_SIGNUP)
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["user"]["email"] == "a@x.com"
        assert body["data"]["user"]["username"] == "alice"
        assert "hashed_password" not in body["data"]["user"]
        assert resp.cookies.get(ACCESS_COOKIE)
        assert resp.cookies.get(REFRESH_COOKIE)
        assert resp.headers["cache-control"] == "no-store"

    def test_cookie_attributes(self, client: TestClient) -> None:
        """Both cookies are httpOnly, SameSite=strict and live exactly as long as their token."""
        resp = client.post("/api/v1/auth/signup", json=_SIGNUP)
        access = _set_cookie_header(resp, ACCESS_COOKIE).lower()
        refresh = _set_cookie_header(resp, REFRESH_COOKIE).lower()
        for header in (access, refresh):
            attributes = [part.strip() for part in header.split(";")[1:]]
            assert "httponly" in attributes
            assert "samesite=strict" in attributes
            # environment=test -> no Secure attribute
            assert "secure" not in attributes
        assert "max-age=900" in access
        assert "max-age=604800" in refresh

    def test_duplicate_signup_returns_409(self, client: TestClient) -> None:
        client.post("/api/v1/auth/signup", json=_SIGNUP)
        resp = client.post("/api/v1/auth/signup", json={**_SIGNUP, "username": "alice2"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_taken"

    def test_invalid_signup_lists_fields(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/signup", json={"email": "not-an-email", "username": "al", "password": "x"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        for field in ("email", "username", "password"):
            assert f"{field}:" in error["detail"]

    def test_login_success_sets_cookies(self, client: TestClient) -> None:
        client.post("/api/v1/auth/signup", json=_SIGNUP)
        client.cookies.clear()
        resp = client.post("/api/v1/auth/login", json={"email": "A@x.com", "password": "longenough1"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Login successful"
        assert resp.cookies.get(ACCESS_COOKIE)

    def test_password_whitespace_is_significant(self, client: TestClient) -> None:
        """Email is trimmed, the password is hashed exactly as typed."""
        resp = client.post(
            "/api/v1/auth/signup",
            json={"email": "  a@x.com ", "username": " alice ", "password": "  longenough1  "},
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["user"]["username"] == "alice"
        client.cookies.clear()

        trimmed = client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": "longenough1"})
        assert trimmed.status_code == 401
        exact = client.post("/api/v1/auth/login", json={"email": " a@x.com", "password": "  longenough1  "})
        assert exact.status_code == 200

    def test_login_with_unknown_email_matches_wrong_password(self, client: TestClient) -> None:
        client.post("/api/v1/auth/signup", json=_SIGNUP)
        wrong = client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": "wrong-password"})
        unknown = client.post("/api/v1/auth/login", json={"email": "nobody@x.com", "password": "longenough1"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()


class TestSessionScenario:
    def test_signup_wrong_password_logout_then_stale_refresh(self, client: TestClient) -> None:
        """The end-to-end lifecycle: a logged-out refresh token is dead."""
        resp = client.post("/api/v1/auth/signup", json=_SIGNUP)
        assert resp.status_code == 201
        assert resp.json()["data"]["user"]["id"]
        old_refresh = resp.cookies[REFRESH_COOKIE]

        resp = client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid email or password"

        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert "max-age=0" in _set_cookie_header(resp, REFRESH_COOKIE).lower()

        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh", cookies={REFRESH_COOKIE: old_refresh})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid refresh token"


class TestRefreshAndLogout:
    def test_refresh_rotates_cookie(self, client: TestClient) -> None:
        old_refresh = client.post("/api/v1/auth/signup", json=_SIGNUP).cookies[REFRESH_COOKIE]
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200
        new_refresh = resp.cookies[REFRESH_COOKIE]
        assert new_refresh != old_refresh

        client.cookies.clear()
        replay = client.post("/api/v1/auth/refresh", cookies={REFRESH_COOKIE: old_refresh})
        assert replay.status_code == 401

    def test_refresh_without_cookie(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "No refresh token provided"

    def test_logout_without_session_is_ok(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logout successful"

    def test_logout_all_revokes_every_session(self, client: TestClient) -> None:
        first_refresh = client.post("/api/v1/auth/signup", json=_SIGNUP).cookies[REFRESH_COOKIE]
        login = client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": "longenough1"})
        assert login.status_code == 200

        resp = client.post("/api/v1/auth/logout-all")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Revoked 2 sessions"

        client.cookies.clear()
        stale = client.post("/api/v1/auth/refresh", cookies={REFRESH_COOKIE: first_refresh})
        assert stale.status_code == 401

    def test_logout_all_requires_auth(self, client: TestClient) -> None:
        assert client.post("/api/v1/auth/logout-all").status_code == 401


class TestMe:
    def test_me_returns_current_user(self, client: TestClient) -> None:
        client.post("/api/v1/auth/signup", json=_SIGNUP)
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        user = resp.json()["data"]["user"]
        assert user["username"] == "alice"
        assert user["oauth_providers"] == []


class TestOAuth:
    def _authorize(self, client: TestClient, provider: str = "google") -> str:
        resp = client.get(f"/api/v1/auth/oauth/{provider}/authorize")
        assert resp.status_code == 302
        return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]

    def test_providers_listed(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert [p["name"] for p in resp.json()] == ["google", "github"]

    def test_authorize_redirects_to_provider(self, client: TestClient, oauth_gateway) -> None:
        resp = client.get("/api/v1/auth/oauth/github/authorize")
        assert resp.status_code == 302
        location = resp.headers["location"]
        query = parse_qs(urlparse(location).query)
        assert location.startswith(PROVIDERS["github"].authorize_url)
        assert query["client_id"] == ["github-id"]
        assert query["redirect_uri"] == [oauth_gateway.redirect_uri("github")]
        assert query["state"][0]

    def test_callback_logs_in_and_redirects_to_frontend(self, client: TestClient, fake_provider, settings) -> None:
        fake_provider.profiles["code-1"] = _GOOGLE_PROFILE
        state = self._authorize(client)

        resp = client.get("/api/v1/auth/oauth/google", params={"code": "code-1", "state": state})
        assert resp.status_code == 302
        assert resp.headers["location"] == f"{settings.frontend_url}/auth/callback?success=true"
        assert resp.cookies.get(ACCESS_COOKIE)
        assert fake_provider.token_requests == ["code-1"]

        me = client.get("/api/v1/auth/me").json()["data"]["user"]
        assert me["email"] == "g@x.com"
        assert me["oauth_providers"] == [{"provider": "google", "provider_id": "g-1"}]

    def test_github_callback_uses_login_when_name_missing(self, client: TestClient, fake_provider) -> None:
        fake_provider.profiles["code-gh"] = {"id": 42, "login": "octo", "email": None, "name": None}
        state = self._authorize(client, "github")

        resp = client.get("/api/v1/auth/oauth/github", params={"code": "code-gh", "state": state})
        assert resp.status_code == 302
        me = client.get("/api/v1/auth/me").json()["data"]["user"]
        assert me["email"] == "42@github.local"
        assert me["username"].startswith("octo")

    def test_forged_state_rejected_before_code_exchange(self, client: TestClient, fake_provider) -> None:
        fake_provider.profiles["code-1"] = _GOOGLE_PROFILE
        self._authorize(client)
        resp = client.get("/api/v1/auth/oauth/google", params={"code": "code-1", "state": "forged"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "oauth_state_mismatch"
        assert fake_provider.token_requests == []

    def test_state_is_single_use(self, client: TestClient, fake_provider) -> None:
        fake_provider.profiles["code-1"] = _GOOGLE_PROFILE
        state = self._authorize(client)
        first = client.get("/api/v1/auth/oauth/google", params={"code": "code-1", "state": state})
        assert first.status_code == 302

        replay = client.get("/api/v1/auth/oauth/google", params={"code": "code-1", "state": state})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "oauth_state_mismatch"
        assert fake_provider.token_requests == ["code-1"]

    def test_callback_without_authorize_rejected(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/oauth/github", params={"code": "code-1", "state": "anything"})
        assert resp.status_code == 401

    def test_missing_code_is_400(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/oauth/google", params={"state": "s"})
        assert resp.status_code == 400

    def test_unknown_provider_is_400(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/oauth/twitter", params={"code": "c", "state": "s"})
        assert resp.status_code == 400

    def test_disabled_provider_is_400(self, settings_factory) -> None:
        app = create_app(settings_factory(github_client_id="", github_client_secret=""))
        with TestClient(app, follow_redirects=False) as c:
            resp = c.get("/api/v1/auth/oauth/github/authorize")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "provider_disabled"

    def test_rejected_code_is_502(self, client: TestClient, fake_provider) -> None:
        state = self._authorize(client)
        resp = client.get("/api/v1/auth/oauth/google", params={"code": "expired-code", "state": state})
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "oauth_exchange_failed"
        assert fake_provider.token_requests == ["expired-code"]

    def test_unverified_google_email_is_401(self, client: TestClient, fake_provider) -> None:
        fake_provider.profiles["code-u"] = {"id": "g-2", "email": "u@x.com", "name": "Una"}
        state = self._authorize(client)
        resp = client.get("/api/v1/auth/oauth/google", params={"code": "code-u", "state": state})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "oauth_email_unverified"
        assert client.app.state.store.find_user_by_email("u@x.com") is None


class TestRateLimit:
    @pytest.fixture
    def limited_client(self, settings_factory) -> Generator[TestClient, None, None]:
        app = create_app(settings_factory(rate_limit_enabled=True))
        limiter.reset()
        try:
            with TestClient(app) as c:
                yield c
        finally:
            limiter.reset()
            limiter.enabled = False

    def test_sixth_login_in_window_is_429(self, limited_client: TestClient) -> None:
        body = {"email": "a@x.com", "password": "whatever-pw"}
        statuses = [limited_client.post("/api/v1/auth/login", json=body).status_code for _ in range(6)]
        assert statuses[:5] == [401] * 5
        assert statuses[5] == 429

    def test_signup_and_login_share_one_budget(self, limited_client: TestClient) -> None:
        for i in range(5):
            body = {"email": f"user{i}@x.com", "username": f"user{i}", "password": "longenough1"}
            assert limited_client.post("/api/v1/auth/signup", json=body).status_code == 201

        resp = limited_client.post("/api/v1/auth/login", json={"email": "user0@x.com", "password": "longenough1"})
        assert resp.status_code == 429
