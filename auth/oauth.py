"""
auth/oauth.py -- OAuth provider gateway (Google, GitHub).

Reads client credentials from Settings to decide which providers are active.
Only providers with both client ID and secret configured are registered --
the frontend renders login buttons from enabled_providers().

Each gateway owns its own authlib OAuth() registry (no module-level state),
so every app built by create_app() sees exactly the providers its Settings
configure. The gateway does two things for the session manager:
  1. authorize_redirect() -- send the browser to the provider. authlib
     generates the state value and saves it in the SessionMiddleware session.
  2. fetch_profile()      -- on the callback, authlib checks the returned
     state against the session (single use) and exchanges the code at the
     provider's token endpoint; the gateway then calls the profile endpoint
     with the obtained access token and normalizes the result to OAuthProfile.

Failure policy:
  Unknown, expired or replayed state -> UnauthorizedError (oauth_state_mismatch).
  Any provider error, transport error or non-2xx response -> UpstreamError.
  Nothing is retried -- the client decides.

Security notes:
  Provider email is authoritative and lowercased for matching. A Google
  profile must report verified_email=true; a missing flag counts as
  unverified, since an unverified address could belong to someone else.

  GitHub users without a public email get "{id}@github.local" and users
  without a display name fall back to their login.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.base_client import MismatchingStateError
from authlib.integrations.starlette_client import OAuth
from starlette.requests import Request
from starlette.responses import RedirectResponse

from auth.models import OAuthProfile, OAuthProvider
from core.config import Settings
from core.errors import InputValidationError, UnauthorizedError, UpstreamError

logger = logging.getLogger("anirec.auth.oauth")

_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class ProviderEndpoints:
    label: str
    authorize_url: str
    token_url: str
    profile_url: str
    scope: str


PROVIDERS: dict[str, ProviderEndpoints] = {
    OAuthProvider.google.value: ProviderEndpoints(
        label="Google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
        profile_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scope="email profile",
    ),
    OAuthProvider.github.value: ProviderEndpoints(
        label="GitHub",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        profile_url="https://api.github.com/user",
        scope="read:user user:email",
    ),
}


class OAuthGateway:
    """Authorization redirect, code exchange and profile lookup for configured providers.

    transport replaces the httpx transport of every provider client (tests
    serve the token and profile endpoints from an httpx.MockTransport).
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._redirect_base = settings.oauth_redirect_base_url.rstrip("/")
        self._registry = OAuth()
        self._enabled: set[str] = set()

        client_kwargs: dict = {
            "timeout": _TIMEOUT_SECONDS,
            "token_endpoint_auth_method": "client_secret_post",  # noqa: S106 -- auth method name
        }
        if transport is not None:
            client_kwargs["transport"] = transport

        credentials = {
            "google": (settings.google_client_id, settings.google_client_secret),
            "github": (settings.github_client_id, settings.github_client_secret),
        }
        for name, (client_id, client_secret) in credentials.items():
            if not (client_id and client_secret):
                continue
            endpoints = PROVIDERS[name]
            self._registry.register(
                name=name,
                client_id=client_id,
                client_secret=client_secret,
                authorize_url=endpoints.authorize_url,
                access_token_url=endpoints.token_url,
                client_kwargs={"scope": endpoints.scope, **client_kwargs},
            )
            self._enabled.add(name)
            logger.info("%s OAuth provider registered", endpoints.label)

    def enabled_providers(self) -> list[dict]:
        """Return [{"name", "label"}] for every configured provider."""
        return [{"name": name, "label": PROVIDERS[name].label} for name in PROVIDERS if name in self._enabled]

    def redirect_uri(self, provider: str) -> str:
        return f"{self._redirect_base}/{provider}"

    async def authorize_redirect(self, request: Request, provider: str) -> RedirectResponse:
        """Redirect to the provider's consent page; authlib stores the state in request.session."""
        client = self._client(provider)
        return await client.authorize_redirect(request, self.redirect_uri(provider))

    async def fetch_profile(self, request: Request, provider: str) -> OAuthProfile:
        """Check state, exchange the callback's code and return the normalized profile."""
        client = self._client(provider)
        try:
            token = await client.authorize_access_token(request)
        except MismatchingStateError as exc:
            logger.warning("%s OAuth callback with unknown or reused state", provider)
            raise UnauthorizedError("Invalid OAuth state", code="oauth_state_mismatch") from exc
        except (AuthlibBaseError, httpx.HTTPError) as exc:
            logger.warning("%s OAuth code exchange failed: %s", provider, exc.__class__.__name__)
            raise UpstreamError(f"{provider} OAuth exchange failed", code="oauth_exchange_failed") from exc

        try:
            resp = await client.get(PROVIDERS[provider].profile_url, token=token, headers={"Accept": "application/json"})
            resp.raise_for_status()
            data = resp.json()
        except (AuthlibBaseError, httpx.HTTPError, ValueError) as exc:
            logger.warning("%s OAuth profile request failed: %s", provider, exc.__class__.__name__)
            raise UpstreamError(f"{provider} OAuth exchange failed", code="oauth_exchange_failed") from exc

        if provider == "github":
            return _github_profile(data)
        return _google_profile(data)

    def _client(self, provider: str):
        if provider not in PROVIDERS:
            raise InputValidationError("Provider must be either google or github", fields=["provider"])
        if provider not in self._enabled:
            raise InputValidationError(f"{provider} OAuth is not configured", code="provider_disabled")
        return self._registry.create_client(provider)


# ---------------------------------------------------------------------------
# Profile normalization -- provider-specific response formats
# ---------------------------------------------------------------------------


def _google_profile(data: dict) -> OAuthProfile:
    email = data.get("email")
    subject = data.get("id")
    if not email or not subject:
        raise UpstreamError("google OAuth: missing email or id in profile", code="oauth_profile_incomplete")
    if data.get("verified_email") is not True:
        logger.warning("Rejected unverified Google email: %s", email)
        raise UnauthorizedError("OAuth email address is not verified", code="oauth_email_unverified")
    return OAuthProfile(
        email=email.lower(),
        display_name=data.get("name") or email.split("@", 1)[0],
        provider_user_id=str(subject),
    )


def _github_profile(data: dict) -> OAuthProfile:
    subject = data.get("id")
    if subject is None:
        raise UpstreamError("github OAuth: missing id in profile", code="oauth_profile_incomplete")
    email = data.get("email") or f"{subject}@github.local"
    return OAuthProfile(
        email=email.lower(),
        display_name=data.get("name") or data.get("login") or str(subject),
        provider_user_id=str(subject),
    )
