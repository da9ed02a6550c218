"""
auth/dependencies.py -- RequestAuthenticator and FastAPI Depends() helpers.

Token sources, checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "accessToken" cookie                 -- set by the browser login flows.

The token must verify as an ACCESS token (a refresh token is rejected as
wrong_kind) and its user_id must still resolve to a user. On success the
caller's Identity is attached to request.state.identity and the User to
request.state.user.

Failures, each a distinct 401 with no further processing:
  token_missing    no token in header or cookie
  token_expired    signature valid, exp passed
  token_invalid    malformed, bad signature
  token_wrong_kind valid refresh token presented as access
  user_not_found   the account behind the token no longer exists

An unexpected fault while loading the user is logged with full detail and
surfaces as an opaque internal error.

Layer rule: auth/dependencies.py may import from fastapi (Request) because it
is part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.models import Identity, TokenKind, User
from auth.store import CredentialStore
from auth.tokens import ACCESS_COOKIE, TokenCodec
from core.errors import AppError, TokenError, TokenFailure, UnauthorizedError

logger = logging.getLogger("anirec.auth")


class RequestAuthenticator:
    """Per-request gate for protected routes."""

    def __init__(self, codec: TokenCodec, store: CredentialStore) -> None:
        self.codec = codec
        self.store = store

    @staticmethod
    def extract_token(request: Request) -> str | None:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
            if token:
                return token
        return request.cookies.get(ACCESS_COOKIE) or None

    def authenticate(self, request: Request) -> User:
        token = self.extract_token(request)
        if token is None:
            raise TokenError(TokenFailure.missing, "No access token provided")

        try:
            claims = self.codec.verify(token, TokenKind.access)
        except TokenError as exc:
            logger.warning("Rejected access token (%s) on %s", exc.failure.value, request.url.path)
            raise

        try:
            user = self.store.find_user_by_id(claims.user_id)
        except Exception as exc:
            logger.exception("User lookup failed during authentication")
            raise AppError("Authentication failed", code="authentication_failed") from exc

        if user is None:
            logger.warning("Token for missing user %s (%s)", claims.user_id, claims.email)
            raise UnauthorizedError("User not found", code="user_not_found")

        request.state.identity = Identity(user_id=user.id, email=user.email)
        request.state.user = user
        return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises a 401-mapped error if unauthenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    authenticator: RequestAuthenticator = request.app.state.authenticator
    return authenticator.authenticate(request)


def get_identity(request: Request) -> Identity:
    """Require authentication and return only {user_id, email}."""
    get_current_user(request)
    return request.state.identity
