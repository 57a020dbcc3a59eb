from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from lexgate.service.verification import CodePurpose
from lexgate.storage.models import Role, UserStatus

# Upper bound so hashing cost cannot be driven by request size
MAX_PASSWORD_LENGTH = 128


class Envelope(BaseModel):
    """Response envelope: ``code`` 0 on success, a stable numeric error code otherwise."""

    code: int = 0
    message: str = "success"
    data: Optional[Any] = None


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(c for c in normalized if unicodedata.category(c) != "Cf")


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{6,20}$")
_CODE_PATTERN = re.compile(r"^[0-9]{4,12}$")


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


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = "".join(ch for ch in value.strip() if ch not in " -()")
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("invalid phone number")
    return compact


def _validate_code(value: str) -> str:
    value = value.strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError("verification code must be numeric")
    return value


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class PhoneLoginRequest(CamelModel):
    phone: str
    code: str

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _validate_phone(value)

    @field_validator("code")
    @classmethod
    def _code(cls, value: str) -> str:
        return _validate_code(value)


class SendCodeRequest(CamelModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    purpose: CodePurpose

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _one_destination(self):
        if bool(self.email) == bool(self.phone):
            raise ValueError("provide exactly one of email or phone")
        return self

    @property
    def identifier(self) -> str:
        return self.email or self.phone or ""


class RegisterRequest(CamelModel):
    email: str
    code: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    name: str = Field(..., min_length=2, max_length=100)
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _code(cls, value: str) -> str:
        return _validate_code(value)

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if len(value) < 2:
            raise ValueError("name must be at least 2 characters")
        return value

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class ResetPasswordRequest(CamelModel):
    email: str
    code: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _code(cls, value: str) -> str:
        return _validate_code(value)


class ChangePasswordRequest(CamelModel):
    old_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class AdjustQuotaRequest(CamelModel):
    token_quota: int = Field(..., ge=0)


class UpdateStatusRequest(CamelModel):
    status: UserStatus


class UpdateRoleRequest(CamelModel):
    role: Role


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class UserResponse(CamelModel):
    id: str
    email: str
    phone: Optional[str] = None
    name: str
    avatar: Optional[str] = None
    role: str
    status: str
    token_quota: int
    token_used: int
    last_login_at: Optional[datetime] = None
    created_at: datetime


class LoginResponse(CamelModel):
    user: UserResponse
    token: TokenPairResponse


class SendCodeResponse(CamelModel):
    sent: bool = True
    expires_in: int


class UsageResponse(CamelModel):
    user_id: str
    token_quota: int
    token_used: int
    remaining: int
    usage_rate: float
