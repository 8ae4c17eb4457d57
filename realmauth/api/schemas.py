from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from realmauth.service.results import ErrorKind

# Generous upper bound for opaque tokens (150 bytes hex is 300 chars)
MAX_TOKEN_LENGTH = 1024

_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

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
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", str_max_length=MAX_TOKEN_LENGTH)


class RegisterRequest(_Request):
    email: str
    password: str = Field(..., max_length=256)


class LoginRequest(_Request):
    email: str
    password: str = Field(..., max_length=256)


class VerifyEmailRequest(_Request):
    email: str
    token: str


class ResendVerificationRequest(_Request):
    email: str
    password: Optional[str] = None
    unique_hash: Optional[str] = None
    session_token: Optional[str] = None


class ChangePasswordRequest(_Request):
    email: str
    current_password: str
    new_password: str


class ChangeEmailRequest(_Request):
    email: str
    password: str
    new_email: str


class ConfirmEmailChangeRequest(_Request):
    previous_email: str
    new_email: str
    token: str


class LinkWalletRequest(_Request):
    email: str
    wallet: str
    password: Optional[str] = None
    unique_hash: Optional[str] = None


class PasswordResetRequest(_Request):
    email: str


class PasswordResetTokenRequest(_Request):
    token: str


class PasswordResetConfirm(_Request):
    token: str
    new_password: str
    confirm_password: str


class SessionTokenRequest(_Request):
    token: str


class InviteGenerateRequest(_Request):
    count: int = Field(..., ge=1)
    purpose: str = Field(..., min_length=1, max_length=64)
    multi_use: bool = False
    max_uses: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None


class InviteRedeemRequest(_Request):
    code: str
    email: str
    unique_hash: str
