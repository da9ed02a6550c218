"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
manager do the work; these only own the shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"


class OAuthProvider(str, Enum):
    google = "google"
    github = "github"


@dataclass(frozen=True)
class OAuthIdentity:
    """One linked third-party identity. (provider, provider_id) is unique."""

    provider: str
    provider_id: str


@dataclass
class User:
    """An AniRec account.

    email is stored lowercased. hashed_password is None for OAuth-only users;
    the store guarantees that a user has a password hash or at least one
    OAuth identity. oauth_identities keeps link order (oldest first).
    """

    email: str
    username: str
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    oauth_identities: list[OAuthIdentity] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    def has_identity(self, provider: str, provider_id: str) -> bool:
        return OAuthIdentity(provider, provider_id) in self.oauth_identities


@dataclass
class RefreshToken:
    """A live session grant. Single-use: rotation deletes it."""

    user_id: int
    token: str
    expires_at: str  # ISO 8601 UTC
    id: int | None = None
    created_at: str | None = None


@dataclass
class ApiKey:
    """The encrypted third-party (AniList) secret for one user.

    ciphertext and iv always come from the same SecretCipher.encrypt() call.
    The plaintext is never persisted and never cached.
    """

    user_id: int
    ciphertext: str
    iv: str
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified content of a signed token."""

    user_id: int
    email: str
    kind: TokenKind


@dataclass(frozen=True)
class Identity:
    """The caller identity attached to request.state by the authenticator."""

    user_id: int
    email: str


@dataclass(frozen=True)
class SessionTokens:
    """A freshly minted access/refresh pair with their lifetimes in seconds."""

    access_token: str
    refresh_token: str
    access_max_age: int
    refresh_max_age: int


@dataclass(frozen=True)
class OAuthProfile:
    """Normalized profile returned by a provider after code exchange."""

    email: str
    display_name: str
    provider_user_id: str
