from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from loginguard.logging import get_correlation_id

MAX_IDENTIFIER_LENGTH = 254

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "mfa_required",
    "not_found",
    "credential_not_found",
    "otp_expired",
    "validation_error",
    "channel_not_supported",
    "conflict",
    "otp_not_valid",
    "credential_changed",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class LoginRequest(BaseModel):
    """Both login phases share one body; a non-empty ``mfa_token`` selects the second."""

    model_config = ConfigDict(extra="forbid")

    phone_number: str = Field("", max_length=MAX_IDENTIFIER_LENGTH)
    mfa_token: Optional[str] = Field(None, max_length=512)
    verification_code: Optional[str] = Field(None, max_length=32)
    channel: str = Field("SMS", max_length=32)
    locale: Optional[str] = Field(None, max_length=35)

    @property
    def is_challenge_phase(self) -> bool:
        return bool(self.mfa_token and self.mfa_token.strip())


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    account_id: int
    expires_at: datetime


class LogoutResponse(BaseModel):
    revoked: bool
    account_id: Optional[int] = None
    revoked_at: Optional[datetime] = None


class MeResponse(BaseModel):
    account_id: int
    username: str
    expires_at: datetime


class PublicKeyResponse(BaseModel):
    kid: str
    algorithm: str = "RS256"
    public_key: str
