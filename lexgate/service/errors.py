from __future__ import annotations

from enum import Enum
from typing import NamedTuple, Optional


class ErrorKind(str, Enum):
    """Closed set of failures the service layer can report."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DISABLED = "account_disabled"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    TOKEN_BAD_SIGNATURE = "token_bad_signature"
    TOKEN_REVOKED = "token_revoked"
    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    EMAIL_EXISTS = "email_exists"
    TOO_SHORT = "too_short"
    TOO_WEAK = "too_weak"
    CODE_INVALID = "code_invalid"
    CODE_EXPIRED = "code_expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    CODE_SEND_TOO_FREQUENT = "code_send_too_frequent"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    UNAUTHORIZED = "unauthorized"
    USER_NOT_FOUND = "user_not_found"
    INVALID_PARAM = "invalid_param"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    NOT_IMPLEMENTED = "not_implemented"
    EMAIL_DELIVERY_FAILED = "email_delivery_failed"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL = "internal"


class ErrorSpec(NamedTuple):
    status_code: int
    code: int
    message: str


# Single source of truth for transport status and numeric code.
# 1xxx generic, 2xxx account/token, 21xx verification, 3xxx quota, 5xxx internal.
ERROR_TABLE: dict[ErrorKind, ErrorSpec] = {
    ErrorKind.INVALID_PARAM: ErrorSpec(400, 1001, "invalid parameter"),
    ErrorKind.UNAUTHORIZED: ErrorSpec(401, 1002, "unauthorized"),
    ErrorKind.FORBIDDEN: ErrorSpec(403, 1003, "forbidden"),
    ErrorKind.NOT_FOUND: ErrorSpec(404, 1004, "not found"),
    ErrorKind.RATE_LIMITED: ErrorSpec(429, 1005, "too many requests"),
    ErrorKind.NOT_IMPLEMENTED: ErrorSpec(501, 1006, "not implemented"),
    ErrorKind.CONFLICT: ErrorSpec(409, 1007, "conflict"),
    ErrorKind.USER_NOT_FOUND: ErrorSpec(404, 2001, "user not found"),
    ErrorKind.EMAIL_EXISTS: ErrorSpec(409, 2002, "email already registered"),
    ErrorKind.INVALID_CREDENTIALS: ErrorSpec(401, 2003, "invalid email or password"),
    ErrorKind.TOKEN_INVALID: ErrorSpec(401, 2004, "invalid token"),
    ErrorKind.TOKEN_EXPIRED: ErrorSpec(401, 2005, "token expired"),
    ErrorKind.ACCOUNT_DISABLED: ErrorSpec(403, 2006, "account is disabled"),
    ErrorKind.ACCOUNT_LOCKED: ErrorSpec(
        429, 2007, "account temporarily locked due to too many failed attempts"
    ),
    ErrorKind.TOKEN_REVOKED: ErrorSpec(401, 2008, "token has been revoked"),
    ErrorKind.REFRESH_TOKEN_INVALID: ErrorSpec(401, 2009, "invalid refresh token"),
    ErrorKind.TOO_SHORT: ErrorSpec(400, 2010, "password must be at least 8 characters"),
    ErrorKind.TOO_WEAK: ErrorSpec(
        400,
        2011,
        "password must contain uppercase, lowercase, digit and special characters",
    ),
    ErrorKind.TOKEN_BAD_SIGNATURE: ErrorSpec(401, 2012, "invalid token signature"),
    ErrorKind.CODE_INVALID: ErrorSpec(400, 2101, "invalid verification code"),
    ErrorKind.CODE_EXPIRED: ErrorSpec(400, 2102, "verification code expired"),
    ErrorKind.TOO_MANY_ATTEMPTS: ErrorSpec(429, 2103, "too many verification attempts"),
    ErrorKind.CODE_SEND_TOO_FREQUENT: ErrorSpec(
        429, 2104, "verification code requested too frequently"
    ),
    ErrorKind.QUOTA_EXCEEDED: ErrorSpec(403, 3001, "token quota exhausted"),
    ErrorKind.INTERNAL: ErrorSpec(500, 5000, "internal server error"),
    ErrorKind.STORE_UNAVAILABLE: ErrorSpec(500, 5002, "internal server error"),
    ErrorKind.EMAIL_DELIVERY_FAILED: ErrorSpec(500, 5003, "failed to send email"),
}


class ServiceError(Exception):
    """Service-layer failure carrying a closed :class:`ErrorKind`.

    HTTP status and numeric code are looked up in ``ERROR_TABLE``; nothing
    else in the codebase compares error strings or picks status codes.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        spec = ERROR_TABLE[kind]
        self.kind = kind
        self.message = message or spec.message
        self.detail = detail or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_TABLE[self.kind].status_code

    @property
    def code(self) -> int:
        return ERROR_TABLE[self.kind].code

    def __repr__(self) -> str:
        return f"ServiceError({self.kind.value!r}, {self.message!r})"


class EmailDeliveryError(Exception):
    """Raised by email transports when a message could not be handed off."""


__all__ = [
    "ErrorKind",
    "ErrorSpec",
    "ERROR_TABLE",
    "ServiceError",
    "EmailDeliveryError",
]
