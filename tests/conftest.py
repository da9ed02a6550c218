"""
tests/conftest.py -- Shared test fixtures for AniRec.

This module provides:
  - make_settings(): deterministic Settings with a unique in-memory database
  - FakeOAuthProvider: the Google/GitHub token and profile endpoints
  - oauth_gateway: the real OAuthGateway over a mock httpx transport
  - store / codec / cipher / sessions: the core components, wired by hand
  - client: TestClient over create_app() with that gateway

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Each test gets its own name, so no state leaks between tests.

bcrypt_rounds=4 keeps password hashing fast; production uses 12.
"""

from __future__ import annotations

import uuid
from collections.abc import Generator
from urllib.parse import parse_qsl

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from auth.crypto import SecretCipher
from auth.oauth import PROVIDERS, OAuthGateway
from auth.sessions import AuthSessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from core.config import Settings

ACCESS_SECRET = "access-secret-for-tests-0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-tests-0123456789abcdef"
ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"
FRONTEND_URL = "http://frontend.example.com"


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        debug=False,
        database_url=f"sqlite:///file:anirec_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true",
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        encryption_key=ENCRYPTION_KEY,
        bcrypt_rounds=4,
        rate_limit_enabled=False,
        frontend_url=FRONTEND_URL,
        google_client_id="google-id",
        google_client_secret="google-secret",
        github_client_id="github-id",
        github_client_secret="github-secret",
    )
    values.update(overrides)
    return Settings(**values)


class FakeOAuthProvider:
    """Serves the Google/GitHub token and profile endpoints from an httpx.MockTransport.

    profiles maps an authorization code to the raw profile JSON the provider
    returns. An unknown code is rejected at the token endpoint (invalid_grant).
    """

    def __init__(self) -> None:
        self.profiles: dict[str, dict] = {}
        self.token_requests: list[str] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in {p.token_url for p in PROVIDERS.values()}:
            form = dict(parse_qsl(request.content.decode()))
            code = form.get("code", "")
            self.token_requests.append(code)
            if code not in self.profiles:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": f"at-{code}", "token_type": "bearer"})
        if url in {p.profile_url for p in PROVIDERS.values()}:
            code = request.headers.get("Authorization", "").removeprefix("Bearer at-")
            if code not in self.profiles:
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.profiles[code])
        return httpx.Response(404)


@pytest.fixture
def settings_factory():
    """Build Settings with overrides on top of the deterministic test values."""
    return make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store(settings: Settings) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(settings.database_url)
    yield s
    s.close()


@pytest.fixture
def codec(settings: Settings) -> TokenCodec:
    return TokenCodec(settings)


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(ENCRYPTION_KEY)


@pytest.fixture
def fake_provider() -> FakeOAuthProvider:
    return FakeOAuthProvider()


@pytest.fixture
def oauth_gateway(settings: Settings, fake_provider: FakeOAuthProvider) -> OAuthGateway:
    return OAuthGateway(settings, transport=httpx.MockTransport(fake_provider.handle))


@pytest.fixture
def sessions(store: CredentialStore, codec: TokenCodec, oauth_gateway: OAuthGateway) -> AuthSessionManager:
    return AuthSessionManager(store, codec, oauth_gateway, bcrypt_rounds=4)


@pytest.fixture
def client(settings: Settings, oauth_gateway: OAuthGateway) -> Generator[TestClient, None, None]:
    """TestClient over the real app; redirects are not followed so tests can assert on them."""
    app = create_app(settings, oauth=oauth_gateway)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=False) as c:
        yield c


def signup_payload(**overrides) -> dict:
    body = {"email": "a@x.com", "username": "alice", "password": "longenough1"}
    body.update(overrides)
    return body
