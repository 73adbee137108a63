from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error / channel_not_supported (400)
    - unauthorized (401)
    - forbidden / mfa_required (403)
    - not_found / credential_not_found / otp_expired (404)
    - conflict / otp_not_valid / credential_changed (409)
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


class UnsupportedChannelError(BadRequestError):
    """The requested messaging channel is unknown (400)."""
    error_code = "channel_not_supported"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class MfaRequiredError(ForbiddenError):
    """The first login phase succeeded; the caller must present the OTP (403)."""
    error_code = "mfa_required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class CredentialNotFoundError(NotFoundError):
    error_code = "credential_not_found"


class ChallengeNotFoundError(NotFoundError):
    """Unknown, expired or already used OTP challenge.

    The three cases share one error so callers cannot probe which one occurred.
    """
    error_code = "otp_expired"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class CodeMismatchError(ConflictError):
    error_code = "otp_not_valid"


class CredentialChangedError(ConflictError):
    """The credential vanished between challenge and verification (409)."""
    error_code = "credential_changed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "UnsupportedChannelError",
    "AuthenticationError",
    "ForbiddenError",
    "MfaRequiredError",
    "NotFoundError",
    "CredentialNotFoundError",
    "ChallengeNotFoundError",
    "ConflictError",
    "CodeMismatchError",
    "CredentialChangedError",
    "ServerError",
]
