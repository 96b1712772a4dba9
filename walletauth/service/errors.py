from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` rendered into the error envelope:
    - unauthorized (401)
    - nonce_mismatch (401)
    - invalid_signature (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - server_error (500)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Raised with a generic message for every token/session check so callers
    cannot tell an expired credential from a revoked or reused one.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NonceMismatchError(AuthenticationError):
    """Nonce token is not bound to the signed message or signer (401)."""
    error_code = "nonce_mismatch"


class InvalidSignatureError(AuthenticationError):
    """Signed sign-in message failed verification (401)."""
    error_code = "invalid_signature"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "NonceMismatchError",
    "InvalidSignatureError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
]
