from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.storage.models import Account

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 100
MAX_TOKEN_LENGTH = 256

EMAIL_MESSAGE = "Please include a valid email"


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_verified",
    "not_found",
    "rate_limited",
    "validation_error",
    "self_action",
    "token_invalid",
    "conflict",
    "delivery_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
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
    """Uniform response wrapper for every JSON body the API returns."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: Any) -> str:
    """Trim, lowercase and syntax-check an address; one message for every failure."""
    if not isinstance(value, str):
        raise ValueError(EMAIL_MESSAGE)
    normalized = _normalize_unicode(value.strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise ValueError(EMAIL_MESSAGE)
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError(EMAIL_MESSAGE)
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError(EMAIL_MESSAGE)
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError(EMAIL_MESSAGE)
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError(EMAIL_MESSAGE)
    return normalized


def _validate_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Name is required")
    cleaned = _normalize_unicode(value.strip())
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValueError(f"Name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


def _validate_new_password(value: Any, label: str = "Password") -> str:
    if not isinstance(value, str) or len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"{label} must be {MIN_PASSWORD_LENGTH} or more characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"{label} must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _require_text(value: Any, message: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(message)
    return value


class RegisterRequest(BaseModel):
    name: str = Field(default="", validate_default=True)
    email: str = Field(default="", validate_default=True)
    password: str = Field(default="", validate_default=True)

    @field_validator("name", mode="before")
    @classmethod
    def _check_name(cls, value: Any) -> str:
        return _validate_name(value)

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value: Any) -> str:
        return _validate_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _check_password(cls, value: Any) -> str:
        return _validate_new_password(value)


class LoginRequest(BaseModel):
    email: str = Field(default="", validate_default=True)
    password: str = Field(default="", validate_default=True)

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value: Any) -> str:
        return _validate_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _check_password(cls, value: Any) -> str:
        return _require_text(value, "Password is required")


class EmailRequest(BaseModel):
    """Body of forgot-password and resend-verification."""

    email: str = Field(default="", validate_default=True)

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value: Any) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(default="", validate_default=True, max_length=MAX_TOKEN_LENGTH)
    password: str = Field(default="", validate_default=True)

    @field_validator("token", mode="before")
    @classmethod
    def _check_token(cls, value: Any) -> str:
        return _require_text(value, "Token is required")

    @field_validator("password", mode="before")
    @classmethod
    def _check_password(cls, value: Any) -> str:
        return _validate_new_password(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(default="", validate_default=True)
    new_password: str = Field(default="", validate_default=True)

    @field_validator("current_password", mode="before")
    @classmethod
    def _check_current(cls, value: Any) -> str:
        return _require_text(value, "Current password is required")

    @field_validator("new_password", mode="before")
    @classmethod
    def _check_new(cls, value: Any) -> str:
        return _validate_new_password(value, "New password")


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _check_name(cls, value: Any) -> Optional[str]:
        return None if value is None else _validate_name(value)

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value: Any) -> Optional[str]:
        return None if value is None else _validate_email(value)


class UpdateRolesRequest(BaseModel):
    roles: List[str] = Field(default_factory=list, max_length=16)

    @field_validator("roles", mode="before")
    @classmethod
    def _check_roles(cls, value: Any) -> Any:
        if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
            raise ValueError("Roles must be a list of role names")
        return value


class AccountResponse(BaseModel):
    """Public view of an account; never carries hashes or token fields."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    roles: List[str]
    is_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls.model_validate(account)


__all__ = [
    "AccountResponse",
    "ChangePasswordRequest",
    "EmailRequest",
    "Envelope",
    "ErrorBody",
    "LoginRequest",
    "RegisterRequest",
    "ResetPasswordRequest",
    "UpdateProfileRequest",
    "UpdateRolesRequest",
]
