from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - invalid_credentials (401)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - unavailable (503)
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


class InvalidCredentialsError(ServiceError):
    """Identifier, password or second-factor code rejected (401).

    The message is always the same generic text whatever the underlying reason.
    """
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """No valid identity presented (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UnavailableError(ServiceError):
    """A critical downstream store could not be reached (503)."""
    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "UnavailableError",
]
