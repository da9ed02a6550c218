"""
core/errors.py -- Typed error taxonomy shared by auth/ and api/.

Every failure the credential core can surface belongs to exactly one
ErrorKind. The HTTP boundary (api/main.py) maps kinds to status codes without
inspecting message strings:

  validation   -> 400    malformed input; message enumerates violated fields
  conflict     -> 409    uniqueness violation (signup, OAuth linking race)
  unauthorized -> 401    bad credentials, missing/expired/invalid token
  not_found    -> 404    resolved identity no longer exists
  upstream     -> 502    OAuth provider or cipher failure not caused by the caller
  internal     -> 500    unexpected fault; message is opaque to the caller

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    validation = "validation"
    conflict = "conflict"
    unauthorized = "unauthorized"
    not_found = "not_found"
    upstream = "upstream"
    internal = "internal"


class TokenFailure(str, Enum):
    """Why a token was rejected. Callers map this to a response, never to a retry."""

    missing = "missing"
    expired = "expired"
    invalid = "invalid"
    wrong_kind = "wrong_kind"


class AppError(Exception):
    """Base class for every classified failure.

    code is a stable machine-readable identifier ("email_taken",
    "token_expired", ...). message is safe to show to the caller.
    """

    kind: ErrorKind = ErrorKind.internal
    code: str = "internal_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InputValidationError(AppError):
    kind = ErrorKind.validation
    code = "validation_error"

    def __init__(self, message: str, fields: list[str] | None = None, code: str | None = None) -> None:
        super().__init__(message, code)
        self.fields = fields or []


class ConflictError(AppError):
    kind = ErrorKind.conflict
    code = "conflict"


class UnauthorizedError(AppError):
    kind = ErrorKind.unauthorized
    code = "unauthorized"


class TokenError(UnauthorizedError):
    """A token failed verification. failure carries the classification."""

    _CODES = {
        TokenFailure.missing: "token_missing",
        TokenFailure.expired: "token_expired",
        TokenFailure.invalid: "token_invalid",
        TokenFailure.wrong_kind: "token_wrong_kind",
    }

    def __init__(self, failure: TokenFailure, message: str) -> None:
        super().__init__(message, self._CODES[failure])
        self.failure = failure


class NotFoundError(AppError):
    kind = ErrorKind.not_found
    code = "not_found"


class UpstreamError(AppError):
    kind = ErrorKind.upstream
    code = "upstream_error"


class DecryptionError(UpstreamError):
    code = "decryption_failed"


class ConfigurationError(AppError):
    """Startup-time misconfiguration. Raised before any request is served."""

    kind = ErrorKind.internal
    code = "configuration_error"
