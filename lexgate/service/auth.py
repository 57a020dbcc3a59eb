from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, NoReturn, Optional, Protocol

from lexgate.logging import get_logger, mask_email, mask_identifier
from lexgate.service.errors import ErrorKind, ServiceError
from lexgate.service.passwords import PasswordVault
from lexgate.service.tokens import TokenCodec
from lexgate.service.verification import (
    CodePurpose,
    VerificationCodeManager,
    normalize_identifier,
)
from lexgate.storage import keys
from lexgate.storage.errors import ConstraintViolation
from lexgate.storage.models import Credential, RefreshRecord, Role, UserStatus, utcnow

logger = get_logger(__name__)


class CredentialRepository(Protocol):
    def get_user(self, user_id: str) -> Optional[Credential]: ...

    def get_user_by_email(self, email: str) -> Optional[Credential]: ...

    def get_user_by_phone(self, phone: str) -> Optional[Credential]: ...

    def email_exists(self, email: str) -> bool: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = "user",
        token_quota: int = 100000,
    ) -> Credential: ...

    def update_user_fields(self, user_id: str, fields: dict[str, Any]) -> Optional[Credential]: ...

    def increment_user_field(self, user_id: str, field: str, amount: int) -> Optional[int]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class LoginResult:
    user: Credential
    token: TokenPair


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialGate:
    """Registration, login, refresh rotation, logout and brute-force lockout."""

    def __init__(
        self,
        store: CredentialRepository,
        cache,
        tokens: TokenCodec,
        vault: PasswordVault,
        *,
        verification: Optional[VerificationCodeManager] = None,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        max_login_attempts: int = 5,
        lockout_seconds: int = 15 * 60,
        default_token_quota: int = 100000,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.vault = vault
        self.verification = verification
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.max_login_attempts = max_login_attempts
        self.lockout_seconds = lockout_seconds
        self.default_token_quota = default_token_quota

    # registration
    async def register(
        self, email: str, password: str, name: str, phone: Optional[str] = None
    ) -> Credential:
        email = normalize_email(email)
        phone = normalize_identifier(phone) if phone else None
        # Advisory only; the unique constraint below is the real guard
        if self.store.email_exists(email):
            raise ServiceError(ErrorKind.EMAIL_EXISTS)
        self.vault.validate_strength(password)
        password_hash = self.vault.hash_password(password)
        try:
            user = self.store.create_user(
                email,
                password_hash,
                name,
                phone=phone,
                token_quota=self.default_token_quota,
            )
        except ConstraintViolation as exc:
            if exc.field == "phone":
                raise ServiceError(ErrorKind.CONFLICT, "phone already registered") from exc
            raise ServiceError(ErrorKind.EMAIL_EXISTS) from exc
        logger.info("user_registered", user_id=user.id, email=mask_email(email))
        return user

    async def register_with_code(
        self,
        email: str,
        code: str,
        password: str,
        name: str,
        phone: Optional[str] = None,
    ) -> Credential:
        """Register after consuming an emailed ``register`` code.

        Cheap checks run first so a rejected password does not burn the code.
        """
        email = normalize_email(email)
        if self.store.email_exists(email):
            raise ServiceError(ErrorKind.EMAIL_EXISTS)
        self.vault.validate_strength(password)
        await self._require_verification().verify_code(email, code, CodePurpose.REGISTER)
        return await self.register(email, password, name, phone)

    # login
    async def login_by_email(self, email: str, password: str) -> LoginResult:
        email = normalize_email(email)
        attempts_key = keys.login_attempts_key(email)
        attempts = await self.cache.get(attempts_key)
        if attempts is not None and int(attempts) >= self.max_login_attempts:
            logger.warning("login_blocked_locked", email=mask_email(email))
            raise ServiceError(ErrorKind.ACCOUNT_LOCKED)

        user = self.store.get_user_by_email(email)
        if user is None:
            self.vault.burn_verify(password)
            await self._fail_login(email, attempts_key)
        elif not self.vault.verify_password(password, user.password_hash):
            await self._fail_login(email, attempts_key)

        if not user.is_active:
            logger.warning("login_account_disabled", user_id=user.id, status=user.status)
            raise ServiceError(ErrorKind.ACCOUNT_DISABLED)

        await self.cache.delete(attempts_key)
        fields: dict[str, Any] = {"last_login_at": utcnow()}
        if self.vault.needs_rehash(user.password_hash):
            fields["password_hash"] = self.vault.hash_password(password)
            logger.info("password_rehashed", user_id=user.id)
        user = self.store.update_user_fields(user.id, fields) or user
        token = await self._issue_token_pair(user)
        logger.info("login_succeeded", user_id=user.id, method="email")
        return LoginResult(user=user, token=token)

    async def _fail_login(self, email: str, attempts_key: str) -> NoReturn:
        count = await self.cache.incr_with_ttl(attempts_key, self.lockout_seconds)
        if count >= self.max_login_attempts:
            logger.warning("account_locked", email=mask_email(email), attempts=count)
        else:
            logger.info("login_failed", email=mask_email(email), attempts=count)
        # Same failure whether or not the account exists
        raise ServiceError(ErrorKind.INVALID_CREDENTIALS)

    async def login_by_phone(self, phone: str, code: str) -> LoginResult:
        phone = normalize_identifier(phone)
        await self._require_verification().verify_code(phone, code, CodePurpose.LOGIN)
        user = self.store.get_user_by_phone(phone)
        if user is None:
            logger.info("login_failed", phone=mask_identifier(phone), method="phone")
            raise ServiceError(ErrorKind.INVALID_CREDENTIALS)
        if not user.is_active:
            raise ServiceError(ErrorKind.ACCOUNT_DISABLED)
        user = self.store.update_user_fields(user.id, {"last_login_at": utcnow()}) or user
        token = await self._issue_token_pair(user)
        logger.info("login_succeeded", user_id=user.id, method="phone")
        return LoginResult(user=user, token=token)

    # tokens
    async def refresh_token(self, raw_token: str) -> TokenPair:
        if not raw_token:
            raise ServiceError(ErrorKind.REFRESH_TOKEN_INVALID)
        # GETDEL: of two concurrent redemptions only one sees the record
        payload = await self.cache.getdel(keys.refresh_key(raw_token))
        if payload is None:
            logger.warning("refresh_token_rejected", reason="unknown_or_reused")
            raise ServiceError(ErrorKind.REFRESH_TOKEN_INVALID)
        try:
            record = RefreshRecord.from_json(json.loads(payload))
        except (ValueError, KeyError, TypeError):
            logger.warning("refresh_token_rejected", reason="corrupt_record")
            raise ServiceError(ErrorKind.REFRESH_TOKEN_INVALID)

        user = self.store.get_user(record.user_id)
        if user is None:
            raise ServiceError(ErrorKind.REFRESH_TOKEN_INVALID)
        if not user.is_active:
            raise ServiceError(ErrorKind.ACCOUNT_DISABLED)
        pair = await self._issue_token_pair(user)
        logger.info("refresh_token_rotated", user_id=user.id)
        return pair

    async def logout(self, access_token: str) -> None:
        """Blacklist the token's jti. Expired tokens are accepted, forged ones are not."""
        jti = self.tokens.get_token_id(access_token)
        # Upper bound on any token's remaining lifetime
        ttl = max(self.tokens.access_ttl_seconds, self.refresh_ttl_seconds)
        await self.cache.set(keys.blacklist_key(jti), "1", ttl)
        logger.info("token_revoked", jti=jti)

    async def _issue_token_pair(self, user: Credential) -> TokenPair:
        access_token = self.tokens.generate_access_token(user.id, user.role)
        refresh_token = self.tokens.generate_refresh_token()
        record = RefreshRecord(user_id=user.id, created_at=utcnow())
        await self.cache.set(
            keys.refresh_key(refresh_token),
            json.dumps(record.to_json()),
            self.refresh_ttl_seconds,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_ttl_seconds,
        )

    # account
    async def get_current_user(self, user_id: str) -> Credential:
        user = self.store.get_user(user_id)
        if user is None:
            raise ServiceError(ErrorKind.USER_NOT_FOUND)
        return user

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        email = normalize_email(email)
        self.vault.validate_strength(new_password)
        await self._require_verification().verify_code(email, code, CodePurpose.RESET_PASSWORD)
        user = self.store.get_user_by_email(email)
        if user is None:
            raise ServiceError(ErrorKind.CODE_INVALID)
        self.store.update_user_fields(
            user.id, {"password_hash": self.vault.hash_password(new_password)}
        )
        await self.cache.delete(keys.login_attempts_key(email))
        logger.info("password_reset", user_id=user.id)

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        user = await self.get_current_user(user_id)
        if not self.vault.verify_password(old_password, user.password_hash):
            logger.info("password_change_rejected", user_id=user_id)
            raise ServiceError(ErrorKind.INVALID_CREDENTIALS, "current password is incorrect")
        self.vault.validate_strength(new_password)
        self.store.update_user_fields(
            user.id, {"password_hash": self.vault.hash_password(new_password)}
        )
        logger.info("password_changed", user_id=user.id)

    async def update_status(self, actor: str, user_id: str, status: UserStatus) -> Credential:
        """Activate, deactivate or ban another account."""
        if actor == user_id:
            raise ServiceError(ErrorKind.INVALID_PARAM, "cannot change your own status")
        user = self.store.update_user_fields(user_id, {"status": UserStatus(status).value})
        if user is None:
            raise ServiceError(ErrorKind.USER_NOT_FOUND)
        logger.info("user_status_changed", admin_id=actor, user_id=user_id, status=user.status)
        return user

    async def update_role(
        self, actor: str, actor_role: str, user_id: str, role: Role
    ) -> Credential:
        """Change another account's role. Only super admins may do this."""
        if actor == user_id:
            raise ServiceError(ErrorKind.INVALID_PARAM, "cannot change your own role")
        if actor_role != Role.SUPER_ADMIN.value:
            raise ServiceError(ErrorKind.FORBIDDEN, "only super admins can change roles")
        user = self.store.update_user_fields(user_id, {"role": Role(role).value})
        if user is None:
            raise ServiceError(ErrorKind.USER_NOT_FOUND)
        logger.info("user_role_changed", admin_id=actor, user_id=user_id, role=user.role)
        return user

    def _require_verification(self) -> VerificationCodeManager:
        if self.verification is None:
            raise ServiceError(ErrorKind.NOT_IMPLEMENTED, "verification codes are not configured")
        return self.verification
