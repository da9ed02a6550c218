"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AniRec happen here. No module should call
os.getenv() or os.environ.get() directly -- the Settings instance built by
load_settings() is passed into create_app() and from there into every
component that needs it.

Design patterns used:
  Explicit initialization: load_settings() is called once by the process
      entry point (asgi.py, main.py). There is no module-level singleton, so
      tests build Settings(...) directly with deterministic keys and hand it
      to create_app().

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var
      names (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are
      built in. frozen=True makes the instance read-only after startup.

  @model_validator(mode="after"): Cross-field validation once all fields are
      resolved. Dev mode generates missing secrets with a warning; production
      mode refuses to start without them.

Security notes:
  ENCRYPTION_KEY must be exactly 32 characters. It is used as the AES-256 key
  material for stored third-party secrets; any other length is a hard
  startup failure, before any cryptographic operation can run.

  JWT_SECRET and JWT_REFRESH_SECRET must each be at least 32 characters and
  must differ. Possession of the access secret must not allow forging
  refresh tokens, and vice versa.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError

logger = logging.getLogger("anirec.config")

ENCRYPTION_KEY_LENGTH = 32
MIN_JWT_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file, provided debug=True (which fills
    in missing secrets) or the secrets are passed explicitly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: Literal["development", "production", "test"] = "development"
    debug: bool = False
    database_url: str = "sqlite:///anirec.db"
    frontend_url: str = "http://localhost:3000"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Secrets -- empty string is the "not configured" sentinel
    # ------------------------------------------------------------------

    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Token lifetimes and hashing
    # ------------------------------------------------------------------

    access_token_ttl: int = 15 * 60
    refresh_token_ttl: int = 7 * 24 * 60 * 60
    bcrypt_rounds: int = 12
    token_purge_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # OAuth providers (empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    # Base URL the provider redirects back to; callback path is appended.
    oauth_redirect_base_url: str = "http://localhost:5000/api/v1/auth/oauth"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True

    @property
    def secure_cookies(self) -> bool:
        """Cookies carry the Secure attribute only in production."""
        return self.environment == "production"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce secret policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions and stored api keys will not survive a restart.

        Production mode: refuse to start if any secret is missing.

        Both modes: wrong-length encryption key, short JWT secrets, or a
            shared access/refresh secret are rejected.
        """
        generated = []
        for field in ("jwt_secret", "jwt_refresh_secret", "encryption_key"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ConfigurationError(
                    f"{field.upper()} is required outside debug mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            # frozen model: bypass __setattr__ during validation only
            if field == "encryption_key":
                value = secrets.token_hex(ENCRYPTION_KEY_LENGTH // 2)
            else:
                value = secrets.token_hex(32)
            object.__setattr__(self, field, value)
            generated.append(field.upper())
        if generated:
            logger.warning(
                "Using auto-generated %s. Sessions and stored secrets will not persist across restarts.",
                ", ".join(generated),
            )

        if len(self.encryption_key.encode("utf-8")) != ENCRYPTION_KEY_LENGTH:
            raise ConfigurationError(f"ENCRYPTION_KEY must be exactly {ENCRYPTION_KEY_LENGTH} characters.")
        for field in ("jwt_secret", "jwt_refresh_secret"):
            if len(getattr(self, field)) < MIN_JWT_SECRET_LENGTH:
                raise ConfigurationError(f"{field.upper()} must be at least {MIN_JWT_SECRET_LENGTH} characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ConfigurationError("JWT_SECRET and JWT_REFRESH_SECRET must differ.")
        return self


def load_settings(**overrides) -> Settings:
    """Build the process Settings from the environment.

    Called once by the entry point. Keyword overrides take precedence over
    environment values (used by the CLI and by tests).
    """
    return Settings(**overrides)
