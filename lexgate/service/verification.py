from __future__ import annotations

import asyncio
import hmac
import secrets
import string
from enum import Enum
from typing import Optional, Protocol

from lexgate.logging import get_logger, mask_identifier
from lexgate.service.email import EmailSender, verification_code_template, verification_subject
from lexgate.service.errors import EmailDeliveryError, ErrorKind, ServiceError
from lexgate.storage import keys

logger = get_logger(__name__)


class CodePurpose(str, Enum):
    REGISTER = "register"
    RESET_PASSWORD = "reset_password"
    LOGIN = "login"


class SmsSender(Protocol):
    def send(self, phone: str, message: str) -> None: ...


class LogSmsSender:
    """Dev/test SMS channel that only logs that a code went out."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, phone: str, message: str) -> None:
        self.sent.append((phone, message))
        logger.info("sms_dev_mode", to=mask_identifier(phone))


def normalize_identifier(identifier: str) -> str:
    """Lower-case emails and strip separators from phone numbers."""
    identifier = (identifier or "").strip()
    if "@" in identifier:
        return identifier.lower()
    return "".join(ch for ch in identifier if ch not in " -()")


def is_phone(identifier: str) -> bool:
    return "@" not in identifier


class VerificationCodeManager:
    """One-time numeric codes per (purpose, identifier).

    Lifecycle: unset -> active -> consumed | expired. The code, a resend
    cooldown and an attempt counter live in the session store under the
    keys from :mod:`lexgate.storage.keys`.
    """

    def __init__(
        self,
        cache,
        email_sender: EmailSender,
        *,
        sms_sender: Optional[SmsSender] = None,
        code_length: int = 6,
        code_ttl_seconds: int = 300,
        resend_seconds: int = 60,
        max_attempts: int = 5,
    ) -> None:
        self.cache = cache
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.code_length = code_length
        self.code_ttl_seconds = code_ttl_seconds
        self.resend_seconds = resend_seconds
        self.max_attempts = max_attempts

    def _generate_code(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.code_length))

    @staticmethod
    def _purpose(purpose: str | CodePurpose) -> CodePurpose:
        try:
            return CodePurpose(purpose)
        except ValueError:
            raise ServiceError(
                ErrorKind.INVALID_PARAM, "unsupported code purpose", detail={"purpose": str(purpose)}
            )

    async def send_code(self, identifier: str, purpose: str | CodePurpose) -> int:
        """Issue and deliver a code. Returns its lifetime in seconds."""
        purpose = self._purpose(purpose)
        identifier = normalize_identifier(identifier)
        if not identifier:
            raise ServiceError(ErrorKind.INVALID_PARAM, "email or phone is required")
        phone = is_phone(identifier)
        if phone and self.sms_sender is None:
            raise ServiceError(ErrorKind.NOT_IMPLEMENTED, "sms verification is not available")

        limit_key = keys.verify_limit_key(identifier)
        code_key = keys.verify_code_key(purpose.value, identifier)

        # SET NX so two concurrent sends cannot both pass the cooldown
        if not await self.cache.set_if_absent(limit_key, "1", self.resend_seconds):
            raise ServiceError(ErrorKind.CODE_SEND_TOO_FREQUENT)

        code = self._generate_code()
        try:
            await self.cache.set(code_key, code, self.code_ttl_seconds)
        except Exception:
            await self.cache.delete(limit_key)
            raise

        minutes = max(1, self.code_ttl_seconds // 60)
        try:
            if phone:
                message = f"Your Lexgate code is {code}. It expires in {minutes} minutes."
                await asyncio.to_thread(self.sms_sender.send, identifier, message)
            else:
                await asyncio.to_thread(
                    self.email_sender.send,
                    identifier,
                    verification_subject(purpose.value),
                    verification_code_template(code, minutes),
                )
        except EmailDeliveryError as exc:
            # Allow an immediate retry
            await self.cache.delete(code_key, limit_key)
            logger.warning(
                "verification_code_delivery_failed",
                identifier=mask_identifier(identifier),
                purpose=purpose.value,
                error=str(exc),
            )
            raise ServiceError(ErrorKind.EMAIL_DELIVERY_FAILED) from exc

        logger.info(
            "verification_code_sent",
            identifier=mask_identifier(identifier),
            purpose=purpose.value,
            channel="sms" if phone else "email",
        )
        return self.code_ttl_seconds

    async def verify_code(self, identifier: str, code: str, purpose: str | CodePurpose) -> None:
        """Consume a code. Succeeds at most once per issued code."""
        purpose = self._purpose(purpose)
        identifier = normalize_identifier(identifier)
        attempts_key = keys.verify_attempts_key(identifier)
        code_key = keys.verify_code_key(purpose.value, identifier)

        attempts = await self.cache.get(attempts_key)
        if attempts is not None and int(attempts) >= self.max_attempts:
            raise ServiceError(ErrorKind.TOO_MANY_ATTEMPTS)

        stored = await self.cache.get(code_key)
        if stored is None:
            await self.cache.incr_with_ttl(attempts_key, self.code_ttl_seconds)
            raise ServiceError(ErrorKind.CODE_EXPIRED)

        if not hmac.compare_digest(stored.encode(), (code or "").strip().encode()):
            count = await self.cache.incr_with_ttl(attempts_key, self.code_ttl_seconds)
            logger.info(
                "verification_code_mismatch",
                identifier=mask_identifier(identifier),
                purpose=purpose.value,
                attempts=count,
            )
            raise ServiceError(ErrorKind.CODE_INVALID)

        # Only the caller whose delete removed the key wins
        if await self.cache.delete(code_key) == 0:
            raise ServiceError(ErrorKind.CODE_EXPIRED)
        await self.cache.delete(attempts_key)
        logger.info(
            "verification_code_verified",
            identifier=mask_identifier(identifier),
            purpose=purpose.value,
        )
