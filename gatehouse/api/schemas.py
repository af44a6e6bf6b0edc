from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_correlation_id
from gatehouse.service.errors import ErrorKind

_GENERIC_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "validation_error",
        "server_error",
    }
)
_VALID_ERROR_CODES = _GENERIC_ERROR_CODES | frozenset(kind.value for kind in ErrorKind)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


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
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(_CamelModel):
    otp_token: str = Field(alias="otpToken")
    masked_email: str = Field(alias="maskedEmail")
    expires_in: int = Field(alias="expiresIn")


class VerifyOTPRequest(_CamelModel):
    otp_token: str = Field(alias="otpToken", min_length=1, max_length=128)
    otp: str = Field(..., pattern=r"^\d{6}$")


class ResendOTPRequest(_CamelModel):
    otp_token: str = Field(alias="otpToken", min_length=1, max_length=128)


class ResendOTPResponse(_CamelModel):
    resend_count: int = Field(alias="resendCount")
    remaining_resends: int = Field(alias="remainingResends")


class UserOut(_CamelModel):
    id: str
    email: str
    role: str
    is_active: bool = Field(alias="isActive")
    display_name: Optional[str] = Field(default=None, alias="displayName")


class SessionResponse(_CamelModel):
    user: UserOut
    access_token: str = Field(alias="accessToken")
    permissions: List[str]


class RefreshResponse(_CamelModel):
    access_token: str = Field(alias="accessToken")


class ActivityOut(_CamelModel):
    ip: str
    user_agent: str = Field(alias="userAgent")
    timestamp: str
    flagged: bool
    indicators: List[str]
    risk_level: str = Field(alias="riskLevel")


class MeResponse(_CamelModel):
    user: UserOut
    permissions: List[str]
    activity: List[ActivityOut]


class PermissionsResponse(_CamelModel):
    role: str
    permissions: List[str]


class MessageResponse(BaseModel):
    message: str
