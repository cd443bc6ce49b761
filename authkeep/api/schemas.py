from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkeep.service.auth import SessionTokens
from authkeep.storage.models import User

# Upper bound for opaque token fields; generated tokens are 43 characters
MAX_TOKEN_LENGTH = 256

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Policy checks (email format, password strength, name) run in AuthService so
# that login can answer malformed emails with invalid_credentials.


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_max_length=1024)

    email: str
    password: str
    name: str


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_max_length=1024)

    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=1024)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., max_length=1024)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    email_verified: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.to_public())


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token lifetime in seconds")

    @classmethod
    def from_session(cls, user: User, tokens: SessionTokens) -> "AuthResponse":
        return cls(
            user=UserResponse.from_user(user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
        )


class MessageResponse(BaseModel):
    message: str
