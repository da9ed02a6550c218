"""
auth/tokens.py -- Password hashing, signed session tokens, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       different secrets (JWT_SECRET, JWT_REFRESH_SECRET) so possession of one
       secret does not allow forging the other token class. Every token
       carries user_id, email, type ("access" | "refresh"), iat, exp and a
       random jti. The jti keeps two tokens minted for the same user in the
       same second distinct, which the refresh_tokens UNIQUE index relies on.

  Kind isolation: verify() reads the claimed type, checks the signature with
       that type's secret, then compares it to the expected kind. A refresh
       token presented where an access token is required therefore fails as
       "wrong_kind" even though its signature is valid. Signature is checked
       before expiry, expiry before kind.

  Passwords: bcrypt directly (no passlib wrapper), cost factor 12 by default.
       bcrypt rejects inputs over 72 bytes, so hash_password() refuses them
       up front with a Validation error instead of truncating.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import SessionTokens, TokenClaims, TokenKind
from core.config import Settings
from core.errors import InputValidationError, TokenError, TokenFailure

logger = logging.getLogger("anirec.auth")

_ALGORITHM = "HS256"

BCRYPT_ROUNDS = 12
_BCRYPT_MAX_BYTES = 72

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise InputValidationError("Password must be at most 72 bytes", fields=["password"])
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Over-long input or a corrupt stored hash -- never a match.
        return False


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Mint and verify typed, expiring session tokens.

    Usage:
        codec = TokenCodec(settings)
        token = codec.mint(user.id, user.email, TokenKind.access)
        claims = codec.verify(token, TokenKind.access)
    """

    def __init__(self, settings: Settings) -> None:
        self._secrets = {
            TokenKind.access: settings.jwt_secret,
            TokenKind.refresh: settings.jwt_refresh_secret,
        }
        self._lifetimes = {
            TokenKind.access: settings.access_token_ttl,
            TokenKind.refresh: settings.refresh_token_ttl,
        }

    def lifetime(self, kind: TokenKind) -> int:
        """Token lifetime in seconds; also the cookie max_age."""
        return self._lifetimes[kind]

    def mint(self, user_id: int, email: str, kind: TokenKind, expire_seconds: int | None = None) -> str:
        """Encode a signed JWT for the given identity and kind.

        expire_seconds overrides the configured lifetime (tests use a negative
        value to produce an already-expired token).
        """
        duration = self._lifetimes[kind] if expire_seconds is None else expire_seconds
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "email": email,
            "type": kind.value,
            "iat": now,
            "exp": now + timedelta(seconds=duration),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=_ALGORITHM)

    def mint_pair(self, user_id: int, email: str) -> SessionTokens:
        return SessionTokens(
            access_token=self.mint(user_id, email, TokenKind.access),
            refresh_token=self.mint(user_id, email, TokenKind.refresh),
            access_max_age=self._lifetimes[TokenKind.access],
            refresh_max_age=self._lifetimes[TokenKind.refresh],
        )

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        """Verify signature, expiry and kind. Raises TokenError on any failure."""
        if not token:
            raise TokenError(TokenFailure.missing, "No token provided")

        try:
            claimed = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenError(TokenFailure.invalid, "Invalid token") from exc

        try:
            kind = TokenKind(claimed.get("type"))
        except ValueError as exc:
            raise TokenError(TokenFailure.invalid, "Invalid token") from exc

        try:
            payload = jwt.decode(token, self._secrets[kind], algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenError(TokenFailure.expired, "Token expired") from exc
        except JWTError as exc:
            raise TokenError(TokenFailure.invalid, "Invalid token") from exc

        if kind is not expected_kind:
            raise TokenError(TokenFailure.wrong_kind, "Invalid token type")

        user_id = payload.get("user_id")
        email = payload.get("email")
        if not isinstance(user_id, int) or isinstance(user_id, bool) or not isinstance(email, str):
            raise TokenError(TokenFailure.invalid, "Invalid token")
        return TokenClaims(user_id=user_id, email=email, kind=kind)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookies(response, tokens: SessionTokens, secure: bool) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS in production.
    max_age: matches each token's own lifetime so cookie and token expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=tokens.access_token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=tokens.access_max_age,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=tokens.refresh_max_age,
    )


def clear_session_cookies(response, secure: bool) -> None:
    """Expire both session cookies. Attributes must match those used to set them."""
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, httponly=True, samesite="strict", secure=secure)
