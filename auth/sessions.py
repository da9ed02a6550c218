"""
auth/sessions.py -- AuthSessionManager: the session state machine.

Per session: Anonymous -> Authenticated (access + refresh issued)
             -> [Refreshed]* -> LoggedOut

Transitions:
  signup()       create a password user, issue a token pair.
  login()        password check with timing equalization, issue a token pair.
  oauth_login()  state check, code exchange and profile fetch via OAuthGateway,
                 then link_oauth_profile(): find-or-create the user by email,
                 link the identity idempotently, issue a pair.
  refresh()      rotation-on-use: the presented refresh token is deleted and a
                 new pair issued in one store transaction. Reuse fails.
  logout()       delete the presented refresh token if any. Idempotent.

Every issuing transition persists the refresh token through CredentialStore
before returning. Cookie writing is the HTTP layer's job (auth.tokens helpers).

Failure policy: security-relevant failures are classified (core.errors) and
raised, never swallowed. Authentication failures are logged at WARNING with
the email or context only -- never passwords, hashes or tokens.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.models import OAuthIdentity, OAuthProfile, SessionTokens, TokenKind, User
from auth.oauth import OAuthGateway
from auth.store import CredentialStore
from auth.tokens import BCRYPT_ROUNDS, TokenCodec, hash_password, verify_password
from core.errors import ConflictError, TokenError, UnauthorizedError

if TYPE_CHECKING:
    from starlette.requests import Request

logger = logging.getLogger("anirec.auth")

# OAuth usernames: display name without whitespace + numeric suffix.
_USERNAME_SUFFIX_RANGE = 10_000
_USERNAME_ATTEMPTS = 5
_USERNAME_BASE_MAX = 24


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: SessionTokens


class AuthSessionManager:
    """Orchestrates signup, login, OAuth, refresh and logout.

    Holds no mutable state of its own; everything durable lives in the store.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        oauth: OAuthGateway,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
    ) -> None:
        self.store = store
        self.codec = codec
        self.oauth = oauth
        self._rounds = bcrypt_rounds
        # Login runs bcrypt against this when the account is unknown or
        # OAuth-only, so response time does not reveal which case it was.
        self._dummy_hash = hash_password("anirec_timing_dummy", rounds=bcrypt_rounds)

    # ------------------------------------------------------------------
    # Password flows
    # ------------------------------------------------------------------

    def signup(self, email: str, username: str, password: str) -> AuthResult:
        """Create a password account and open a session.

        Raises ConflictError if the email or username is taken. The store's
        UNIQUE constraints decide -- there is no lookup beforehand.
        """
        email = email.strip().lower()
        hashed = hash_password(password, rounds=self._rounds)
        try:
            user = self.store.create_user(User(email=email, username=username.strip(), hashed_password=hashed))
        except ConflictError:
            logger.warning("Signup rejected, email or username taken: %s", email)
            raise

        tokens = self._issue(user)
        logger.info("User signed up: %s", user.email)
        return AuthResult(user=user, tokens=tokens)

    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate by email + password.

        Unknown email, OAuth-only account and wrong password all raise the same
        UnauthorizedError so the response does not enumerate accounts.
        """
        email = email.strip().lower()
        user = self.store.find_user_by_email(email)
        if user is None or user.hashed_password is None:
            verify_password(password, self._dummy_hash)
            logger.warning("Failed login attempt for email: %s", email)
            raise UnauthorizedError("Invalid email or password", code="bad_credentials")
        if not verify_password(password, user.hashed_password):
            logger.warning("Failed login attempt for email: %s", email)
            raise UnauthorizedError("Invalid email or password", code="bad_credentials")

        tokens = self._issue(user)
        logger.info("User logged in: %s", user.email)
        return AuthResult(user=user, tokens=tokens)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def oauth_login(self, provider: str, callback: Request) -> AuthResult:
        """Log in (or sign up) from a provider's callback request.

        The gateway validates the state saved at authorize time and exchanges
        the code; the resulting profile is linked by link_oauth_profile().
        """
        profile = await self.oauth.fetch_profile(callback, provider)
        return self.link_oauth_profile(provider, profile)

    def link_oauth_profile(self, provider: str, profile: OAuthProfile) -> AuthResult:
        """Find or create the account for a provider profile and open a session.

        The provider email is authoritative. An existing account with that
        email gets the identity appended once; repeated logins with the same
        (provider, provider_id) never duplicate it.
        """
        user = self.store.find_user_by_email(profile.email)
        if user is None:
            user = self._create_oauth_user(provider, profile)
        elif not user.has_identity(provider, profile.provider_user_id):
            self._link(user, provider, profile)
            user = self.store.find_user_by_id(user.id) or user

        tokens = self._issue(user)
        logger.info("OAuth login: %s via %s", user.email, provider)
        return AuthResult(user=user, tokens=tokens)

    def _create_oauth_user(self, provider: str, profile: OAuthProfile) -> User:
        base = re.sub(r"\s+", "", profile.display_name).lower()[:_USERNAME_BASE_MAX] or "user"
        identity = OAuthIdentity(provider, profile.provider_user_id)
        for _ in range(_USERNAME_ATTEMPTS):
            username = f"{base}{secrets.randbelow(_USERNAME_SUFFIX_RANGE)}"
            try:
                return self.store.create_user(User(email=profile.email, username=username, oauth_identities=[identity]))
            except ConflictError as exc:
                if exc.code == "username_taken":
                    continue
                if exc.code == "email_taken":
                    # A concurrent OAuth login created the account first.
                    existing = self.store.find_user_by_email(profile.email)
                    if existing is not None:
                        if not existing.has_identity(provider, profile.provider_user_id):
                            self._link(existing, provider, profile)
                        return self.store.find_user_by_id(existing.id) or existing
                logger.warning("OAuth signup conflict for email: %s via %s", profile.email, provider)
                raise
        logger.warning("OAuth signup could not allocate a username for base %r", base)
        raise ConflictError("Could not allocate a unique username", code="username_taken")

    def _link(self, user: User, provider: str, profile: OAuthProfile) -> None:
        try:
            self.store.append_oauth_identity(user.id, provider, profile.provider_user_id)
        except ConflictError:
            logger.warning("OAuth identity %s already linked to another account (email: %s)", provider, user.email)
            raise

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str | None) -> SessionTokens:
        """Rotate a refresh token: delete it and issue a brand-new pair.

        Each refresh token is single-use. A token that fails verification,
        is unknown to the store, is owned by someone other than its claimed
        user, or loses a concurrent rotation race raises UnauthorizedError.
        """
        if not refresh_token:
            raise UnauthorizedError("No refresh token provided", code="token_missing")

        try:
            claims = self.codec.verify(refresh_token, TokenKind.refresh)
        except TokenError as exc:
            logger.warning("Refresh rejected: token %s", exc.failure.value)
            raise UnauthorizedError("Invalid refresh token", code="invalid_refresh_token") from exc

        record = self.store.find_refresh_token(refresh_token)
        if record is None or record.user_id != claims.user_id:
            logger.warning("Refresh rejected: unknown or reused token for %s", claims.email)
            raise UnauthorizedError("Invalid refresh token", code="invalid_refresh_token")

        tokens = self.codec.mint_pair(claims.user_id, claims.email)
        rotated = self.store.rotate_refresh_token(
            refresh_token, claims.user_id, tokens.refresh_token, self._refresh_expiry(tokens)
        )
        if not rotated:
            logger.warning("Refresh rejected: token already rotated for %s", claims.email)
            raise UnauthorizedError("Invalid refresh token", code="invalid_refresh_token")
        return tokens

    def logout(self, refresh_token: str | None) -> bool:
        """End the session owning refresh_token. Returns True if a token was revoked.

        Logging out without a (valid) session is not an error.
        """
        if not refresh_token:
            return False
        revoked = self.store.delete_refresh_token(refresh_token)
        logger.info("Logout (session revoked=%s)", revoked)
        return revoked

    def logout_everywhere(self, user_id: int) -> int:
        """Revoke every refresh token of a user. Returns the number revoked."""
        count = self.store.delete_all_for_user(user_id)
        logger.info("Revoked %d sessions for user %s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(self, user: User) -> SessionTokens:
        tokens = self.codec.mint_pair(user.id, user.email)
        self.store.create_refresh_token(user.id, tokens.refresh_token, self._refresh_expiry(tokens))
        return tokens

    @staticmethod
    def _refresh_expiry(tokens: SessionTokens) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=tokens.refresh_max_age)
