from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. None of these are retried inside the service.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MissingTokenError(AuthenticationError):
    """No usable bearer token in the Authorization header."""
    error_code = "missing_token"


class MalformedTokenError(AuthenticationError):
    """Token is structurally invalid. Not retryable."""
    error_code = "malformed_token"


class TokenExpiredError(AuthenticationError):
    """Token is past its expiry; the client must log in again."""
    error_code = "token_expired"


class SignatureInvalidError(AuthenticationError):
    """Signature mismatch: tampered token or wrong signing key."""
    error_code = "signature_invalid"


class TokenRevokedError(AuthenticationError):
    """Token was blacklisted by a logout."""
    error_code = "token_revoked"


class InvalidCredentialsError(AuthenticationError):
    """Login failed. Deliberately says nothing about which part was wrong."""
    error_code = "invalid_credentials"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class StoreUnavailableError(ServiceError):
    """Revocation or profile cache could not be reached in time (503)."""
    status_code = 503
    error_code = "store_unavailable"


class SessionPurgeError(StoreUnavailableError):
    """Session-marker sweep stopped part way; earlier deletions stand."""

    def __init__(self, message: str, *, deleted: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.deleted = deleted


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "MissingTokenError",
    "MalformedTokenError",
    "TokenExpiredError",
    "SignatureInvalidError",
    "TokenRevokedError",
    "InvalidCredentialsError",
    "NotFoundError",
    "ConflictError",
    "StoreUnavailableError",
    "SessionPurgeError",
    "ServerError",
]
