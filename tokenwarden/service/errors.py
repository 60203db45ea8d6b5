from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - invalid_token (401)
    - email_not_verified (403)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - backend_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input; raised before any side effect (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


INVALID_TOKEN_MESSAGE = "invalid or expired token"


class InvalidTokenError(AuthenticationError):
    """A single-use credential is absent or past its expiry (401).

    Subclasses exist for logging and tests only; they all carry the same
    message and code so callers cannot tell absent from expired.
    """
    error_code = "invalid_token"

    def __init__(self, message: str = INVALID_TOKEN_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionTokenNotFoundError(InvalidTokenError):
    pass


class SessionTokenExpiredError(InvalidTokenError):
    pass


class InvalidVerificationCodeError(InvalidTokenError):
    pass


class InvalidResetTokenError(InvalidTokenError):
    pass


class InvalidSignatureError(AuthenticationError):
    """Access token signature or claims did not verify (401)."""
    error_code = "invalid_token"


class AccessTokenExpiredError(AuthenticationError):
    """Access token is past its ``exp`` claim (401)."""
    error_code = "token_expired"


class EmailNotVerifiedError(ServiceError):
    """Account exists but has not proven ownership of its email (403)."""
    status_code = 403
    error_code = "email_not_verified"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or display name (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after: float = 1,
        **kwargs,
    ) -> None:
        self.retry_after = max(1, math.ceil(retry_after))
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": self.retry_after}
        super().__init__(message, detail=detail, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class BackendUnavailableError(ServerError):
    """A backing service could not be reached in time (503)."""
    status_code = 503
    error_code = "backend_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "INVALID_TOKEN_MESSAGE",
    "InvalidTokenError",
    "SessionTokenNotFoundError",
    "SessionTokenExpiredError",
    "InvalidVerificationCodeError",
    "InvalidResetTokenError",
    "InvalidSignatureError",
    "AccessTokenExpiredError",
    "EmailNotVerifiedError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "BackendUnavailableError",
]
