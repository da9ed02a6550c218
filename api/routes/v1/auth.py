"""
api/routes/v1/auth.py -- Authentication and session endpoints.

Routes:
  POST /api/v1/auth/signup                    -- create account; sets both cookies; 201
  POST /api/v1/auth/login                     -- password login; sets both cookies
  POST /api/v1/auth/logout                    -- revoke refresh token (if any); clears cookies
  POST /api/v1/auth/logout-all                -- revoke every session of the caller (requires auth)
  POST /api/v1/auth/refresh                   -- rotate refresh token; sets both cookies
  GET  /api/v1/auth/me                        -- current user info (requires auth)
  GET  /api/v1/auth/providers                 -- list enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}/authorize -- redirect to the provider with a state value
  GET  /api/v1/auth/oauth/{provider}          -- OAuth callback; sets cookies; 302 to the frontend

Security:
  Signup and login share one per-IP budget (api.limiter.AUTH_RATE_LIMIT).
  Login failures use one generic message so accounts cannot be enumerated.
  Cache-Control: no-store on every response that sets session cookies.
  OAuth state is generated by authlib on /authorize, kept in the signed
  session cookie and consumed on the callback (CSRF protection for the code
  flow). A missing, forged or replayed state is 401.

The routes only translate HTTP <-> AuthSessionManager calls; every decision
lives in auth/sessions.py. Errors propagate as core.errors types and are
mapped to status codes by the handlers in api/main.py.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    AuthResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    SignupRequest,
    UserEnvelope,
    UserInfo,
)
from auth.dependencies import get_current_user
from auth.models import OAuthProvider, User
from auth.sessions import AuthSessionManager
from auth.tokens import REFRESH_COOKIE, clear_session_cookies, set_session_cookies
from core.errors import InputValidationError

# Auth policy:
# - POST /auth/signup, /auth/login:   public, rate-limited
# - POST /auth/logout, /auth/refresh: public -- they act on the refresh cookie
# - GET  /auth/providers, /auth/oauth/*: public
# - GET  /auth/me, POST /auth/logout-all: requires auth (get_current_user)
router = APIRouter()


def _sessions(request: Request) -> AuthSessionManager:
    return request.app.state.sessions


def _secure(request: Request) -> bool:
    return request.app.state.settings.secure_cookies


def _user_response(status_code: int, user: User, message: str) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(data=UserEnvelope(user=UserInfo.from_user(user)), message=message).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password flows
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
@limiter.shared_limit(AUTH_RATE_LIMIT, scope="auth")
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create a password account and open a session (access + refresh cookies)."""
    result = _sessions(request).signup(body.email, body.username, body.password)
    resp = _user_response(201, result.user, "User created successfully")
    set_session_cookies(resp, result.tokens, _secure(request))
    return resp


@router.post("/auth/login", response_model=AuthResponse)
@limiter.shared_limit(AUTH_RATE_LIMIT, scope="auth")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set both session cookies.

    Unknown email, OAuth-only account and wrong password all return the same
    401 "Invalid email or password".
    """
    result = _sessions(request).login(body.email, body.password)
    resp = _user_response(200, result.user, "Login successful")
    set_session_cookies(resp, result.tokens, _secure(request))
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the refresh token from the cookie (if any) and clear both cookies.

    Idempotent: calling it without a session still returns 200.
    """
    _sessions(request).logout(request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=MessageResponse(message="Logout successful").model_dump())
    clear_session_cookies(resp, _secure(request))
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke every refresh token of the current user and clear this client's cookies."""
    count = _sessions(request).logout_everywhere(current_user.id)
    resp = JSONResponse(content=MessageResponse(message=f"Revoked {count} sessions").model_dump())
    clear_session_cookies(resp, _secure(request))
    return resp


@router.post("/auth/refresh", response_model=MessageResponse)
def refresh(request: Request) -> JSONResponse:
    """Rotate the refresh cookie: the presented token is single-use."""
    tokens = _sessions(request).refresh(request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=MessageResponse(message="Token refreshed successfully").model_dump())
    set_session_cookies(resp, tokens, _secure(request))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(data=UserEnvelope(user=UserInfo.from_user(current_user)))


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty list if none are set up."""
    return [OAuthProviderInfo(**p) for p in _sessions(request).oauth.enabled_providers()]


@router.get("/auth/oauth/{provider}/authorize")
async def oauth_authorize(request: Request, provider: OAuthProvider) -> RedirectResponse:
    """Send the browser to the provider's consent page."""
    return await _sessions(request).oauth.authorize_redirect(request, provider.value)


@router.get("/auth/oauth/{provider}")
async def oauth_callback(
    request: Request,
    provider: OAuthProvider,
    code: str | None = None,
    state: str | None = None,
) -> RedirectResponse:
    """Finish the authorization-code flow and redirect back to the frontend."""
    if not code or not state:
        raise InputValidationError("Missing authorization code or state", fields=["code", "state"])

    result = await _sessions(request).oauth_login(provider.value, request)

    frontend = request.app.state.settings.frontend_url.rstrip("/")
    resp = RedirectResponse(f"{frontend}/auth/callback?success=true", status_code=302)
    set_session_cookies(resp, result.tokens, _secure(request))
    resp.headers["Cache-Control"] = "no-store"
    return resp
