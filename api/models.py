"""
API request and response models for AniRec REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import User


def _strip(value):
    return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup."""

    email: EmailStr
    username: str = Field(min_length=3, max_length=30)
    # bcrypt only looks at the first 72 bytes; refuse longer input outright.
    password: str = Field(min_length=8, max_length=72)

    @field_validator("email", "username", mode="before")
    @classmethod
    def strip_identifiers(cls, value):
        """Trim email and username. Passwords are hashed exactly as typed."""
        return _strip(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=72)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return _strip(value)


class ApiKeyStoreRequest(BaseModel):
    """Request body for POST /api/v1/anilist/key.

    store_permanently is accepted for client compatibility; both values
    persist the encrypted secret in the same way.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    api_key: str = Field(min_length=1, max_length=4096)
    store_permanently: bool = True


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class OAuthIdentityInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    provider_id: str


class UserInfo(BaseModel):
    """Public view of a user -- never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    oauth_providers: list[OAuthIdentityInfo] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            oauth_providers=[
                OAuthIdentityInfo(provider=i.provider, provider_id=i.provider_id) for i in user.oauth_identities
            ],
        )


class UserEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserInfo


class AuthResponse(BaseModel):
    """Response for signup and login. Tokens travel in cookies only."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    data: UserEnvelope
    message: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    data: UserEnvelope


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class ApiKeyStatusResponse(BaseModel):
    """Response for GET /api/v1/anilist/key. The secret itself is never returned."""

    model_config = ConfigDict(frozen=True)

    has_key: bool
    updated_at: Optional[str] = None


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
