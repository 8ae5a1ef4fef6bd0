from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from olakz_auth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "BAD_REQUEST",
    "VALIDATION_ERROR",
    "UNAUTHORIZED",
    "TOKEN_EXPIRED",
    "INVALID_TOKEN",
    "INVALID_REFRESH_TOKEN",
    "OTP_EXPIRED",
    "OTP_INVALID",
    "OTP_ALREADY_USED",
    "INVALID_PROVIDER_TOKEN",
    "ROLE_NOT_ASSIGNED",
    "FORBIDDEN",
    "NOT_FOUND",
    "CONFLICT",
    "RATE_LIMIT_EXCEEDED",
    "SERVICE_UNAVAILABLE",
    "INTERNAL_SERVER_ERROR",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorBody(BaseModel):
    """Stable machine-readable error code plus optional details."""

    code: str
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

    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    timestamp: datetime = Field(default_factory=_now)
    request_id: str = Field(default_factory=_request_id)


def ok(message: str, data: Any = None) -> Envelope:
    return Envelope(success=True, message=message, data=data)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Minimum length plus upper, lower and digit character classes."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value) or not re.search(r"[A-Z]", value):
        raise ValueError("password must contain upper and lower case letters")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a number")
    return value


_NAME_PATTERN = re.compile(r"^[^\x00-\x1f<>]{1,50}$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()-]{7,20}$")
_CODE_PATTERN = re.compile(r"^[0-9]{4,10}$")


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = _normalize_unicode(value.strip())
    if not _NAME_PATTERN.match(value):
        raise ValueError("name must be 1-50 printable characters")
    return value


def _validate_code(value: str) -> str:
    value = value.strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError("code must be numeric")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _PHONE_PATTERN.match(value.strip()):
            raise ValueError("invalid phone number")
        return value.strip()


class VerifyEmailRequest(BaseModel):
    email: str
    otp: str = Field(..., max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        return _validate_code(value)


class EmailOnlyRequest(BaseModel):
    """Body for resend-otp and forgot-password."""

    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class ResetPasswordRequest(BaseModel):
    email: str
    otp: str = Field(..., max_length=10)
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        return _validate_code(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateProfileRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _PHONE_PATTERN.match(value.strip()):
            raise ValueError("invalid phone number")
        return value.strip()

    @field_validator("avatar_url")
    @classmethod
    def _validate_avatar_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("https://", "http://")):
            raise ValueError("avatar_url must be an http(s) URL")
        return value


class GoogleSignInRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=8192)


class AppleSignInRequest(BaseModel):
    identity_token: str = Field(..., min_length=1, max_length=8192)
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class LinkProviderRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)


class SwitchRoleRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=32)


class UpdateRolesRequest(BaseModel):
    roles: List[str] = Field(..., min_length=1, max_length=8)
    active_role: Optional[str] = Field(default=None, max_length=32)


class InternalSendEmailRequest(BaseModel):
    to: str
    subject: str = Field(..., min_length=1, max_length=256)
    html: str = Field(..., min_length=1, max_length=262144)

    @field_validator("to")
    @classmethod
    def _validate_recipient(cls, value: str) -> str:
        return _validate_email(value)


class InternalAddRoleRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=32)


class AuthResponse(BaseModel):
    user: dict
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    is_new_user: bool = False
