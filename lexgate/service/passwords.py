from __future__ import annotations

import unicodedata

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from lexgate.logging import get_logger
from lexgate.service.errors import ErrorKind, ServiceError

logger = get_logger(__name__)

DEFAULT_COST = 12
MIN_COST = 1
MAX_COST = 31
MIN_PASSWORD_LENGTH = 8


class PasswordVault:
    """argon2id password hashing plus the account password policy."""

    def __init__(
        self,
        cost: int = DEFAULT_COST,
        *,
        memory_cost_kib: int = 19456,
        parallelism: int = 1,
    ) -> None:
        if not isinstance(cost, int) or not MIN_COST <= cost <= MAX_COST:
            logger.warning("password_hash_cost_invalid", cost=cost, fallback=DEFAULT_COST)
            cost = DEFAULT_COST
        self.cost = cost
        self._hasher = PasswordHasher(
            time_cost=cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: str | None = None

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        """Return True only when ``password`` matches; every failure looks the same."""
        try:
            return self._hasher.verify(password_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def burn_verify(self, password: str) -> None:
        """Spend one verification's worth of work against a throwaway hash.

        Used when the account does not exist so response time does not
        reveal whether the email is registered.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("lexgate-timing-equalizer")
        self.verify_password(password, self._dummy_hash)

    @staticmethod
    def validate_strength(password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ServiceError(ErrorKind.TOO_SHORT)
        has_upper = has_lower = has_digit = has_special = False
        for char in password:
            category = unicodedata.category(char)
            if category == "Lu":
                has_upper = True
            elif category == "Ll":
                has_lower = True
            elif category == "Nd":
                has_digit = True
            elif category[0] in ("P", "S"):
                has_special = True
        if not (has_upper and has_lower and has_digit and has_special):
            raise ServiceError(ErrorKind.TOO_WEAK)
