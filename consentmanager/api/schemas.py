from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "validation_error",
    "server_error",
}

MAX_USERNAME_LENGTH = 256
MAX_PASSWORD_LENGTH = 1024


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SessionRequestBody(BaseModel):
    # Optional so that missing credentials surface as 401 rather than 422
    username: Optional[str] = Field(default=None, max_length=MAX_USERNAME_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class LogoutRequestBody(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class OtpVerificationRequestBody(BaseModel):
    username: str = Field(..., min_length=1, max_length=MAX_USERNAME_LENGTH)


class OtpPermitRequestBody(BaseModel):
    username: Optional[str] = Field(default=None, max_length=MAX_USERNAME_LENGTH)
    session_id: str = Field(..., min_length=1, max_length=128)
    otp: Optional[str] = Field(default=None, max_length=16)


class SessionResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


class OtpMetaResponse(BaseModel):
    communication_medium: str
    communication_hint: str
    communication_expiry: str


class OtpVerificationResponseBody(BaseModel):
    session_id: str
    meta: OtpMetaResponse
