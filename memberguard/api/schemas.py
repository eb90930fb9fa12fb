from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from memberguard.service.passwords import check_complexity

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "session_expired",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "policy_violation",
    "conflict",
    "locked_out",
    "server_error",
    "transport_failure",
})

MAX_PASSWORD_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""

    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


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


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_MOBILE_PATTERN = re.compile(r"^\+?[0-9 -]{8,15}$")
_CARD_PATTERN = re.compile(r"^[0-9 -]{12,23}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip())
    if len(normalized) > 100:
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
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    problems = check_complexity(value)
    if problems:
        raise ValueError(" ".join(problems))
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    confirm_password: str
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    mobile_no: str = Field(..., max_length=20)
    billing_address: str = Field(..., min_length=1, max_length=200)
    shipping_address: str = Field(..., min_length=1, max_length=200)
    credit_card: str = Field(..., max_length=23)
    captcha_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirmation(cls, value: str, info) -> str:
        if "password" in info.data and value != info.data["password"]:
            raise ValueError("passwords do not match")
        return value

    @field_validator("mobile_no")
    @classmethod
    def _validate_mobile(cls, value: str) -> str:
        if not _MOBILE_PATTERN.match(value.strip()):
            raise ValueError("invalid mobile number")
        return value.strip()

    @field_validator("credit_card")
    @classmethod
    def _validate_card(cls, value: str) -> str:
        if not _CARD_PATTERN.match(value.strip()):
            raise ValueError("invalid credit card number")
        digits = re.sub(r"[^0-9]", "", value)
        if not 12 <= len(digits) <= 19:
            raise ValueError("invalid credit card number")
        return digits


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    captcha_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyTwoFactorRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    use_recovery_code: bool = False


class TwoFactorSetupRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirmation(cls, value: str, info) -> str:
        if "new_password" in info.data and value != info.data["new_password"]:
            raise ValueError("passwords do not match")
        return value


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirmation(cls, value: str, info) -> str:
        if "new_password" in info.data and value != info.data["new_password"]:
            raise ValueError("passwords do not match")
        return value


class AccountResponse(BaseModel):
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    mobile_no: str = ""
    billing_address: str = ""
    shipping_address: str = ""
    credit_card: str = ""
    two_factor_enabled: bool = False
    recovery_codes_remaining: int = 0
    last_login_at: Optional[datetime] = None
    password_expiry_at: Optional[datetime] = None


class SignInResponse(BaseModel):
    account_id: str
    stage: str
    redirect: Optional[str] = None
    session_expires_in: Optional[int] = None


class TwoFactorSetupResponse(BaseModel):
    enabled: bool
    shared_key: Optional[str] = None
    otpauth_uri: Optional[str] = None


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str] = Field(default_factory=list)
    remaining: int = 0


class SessionStatusResponse(BaseModel):
    valid: bool
    redirect: Optional[str] = None
