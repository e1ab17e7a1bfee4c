from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidUsernameError(AuthenticationError):
    """No credential record exists for the supplied username."""

    def __init__(self, message: str = "invalid username", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidPasswordError(AuthenticationError):
    """The supplied password does not match the stored credential."""

    def __init__(self, message: str = "invalid password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOtpError(AuthenticationError):
    """The OTP service rejected the supplied code."""

    def __init__(self, message: str = "invalid otp", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Too many failed logins; the account is temporarily blocked."""

    def __init__(self, message: str = "user blocked temporarily", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamServiceError(ServerError):
    """A downstream HTTP dependency failed or was unreachable."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidUsernameError",
    "InvalidPasswordError",
    "InvalidOtpError",
    "AccountLockedError",
    "NotFoundError",
    "ServerError",
    "UpstreamServiceError",
]
