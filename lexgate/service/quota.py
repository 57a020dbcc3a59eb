from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from lexgate.logging import get_logger
from lexgate.service.access import AuthContext
from lexgate.service.errors import ErrorKind, ServiceError
from lexgate.storage.models import ADMIN_ROLES

logger = get_logger(__name__)


@dataclass(frozen=True)
class UsageStats:
    user_id: str
    token_quota: int
    token_used: int

    @property
    def remaining(self) -> int:
        return max(self.token_quota - self.token_used, 0)

    @property
    def usage_rate(self) -> float:
        if self.token_quota <= 0:
            return 1.0 if self.token_used > 0 else 0.0
        return round(self.token_used / self.token_quota, 4)


class QuotaGovernor:
    """Per-user token budget: admission check plus bounded deduction."""

    def __init__(self, store, *, exempt_roles: Iterable[str] = ADMIN_ROLES) -> None:
        self.store = store
        self.exempt_roles = frozenset(exempt_roles)

    def is_exempt(self, identity: AuthContext) -> bool:
        return identity.role in self.exempt_roles

    def _load(self, user_id: str) -> tuple[int, int]:
        quota = self.store.get_quota(user_id)
        if quota is None:
            raise ServiceError(ErrorKind.USER_NOT_FOUND)
        return quota

    async def check(self, identity: Optional[AuthContext]) -> Optional[int]:
        """Return the remaining budget, or ``None`` when no budget applies."""
        if identity is None or self.is_exempt(identity):
            return None
        token_quota, token_used = self._load(identity.user_id)
        if token_used >= token_quota:
            logger.info(
                "quota_exhausted",
                user_id=identity.user_id,
                token_quota=token_quota,
                token_used=token_used,
            )
            raise ServiceError(ErrorKind.QUOTA_EXCEEDED)
        return token_quota - token_used

    async def consume_tokens(self, identity: AuthContext, amount: int) -> Optional[int]:
        """Charge ``amount`` tokens after a served request.

        The deduction only applies while usage is still under quota, in one
        store operation, so racing requests cannot all slip past the check.
        Exempt roles are tracked without a bound.
        """
        if amount < 0:
            raise ServiceError(ErrorKind.INVALID_PARAM, "token amount must be non-negative")
        if self.is_exempt(identity):
            if self.store.increment_user_field(identity.user_id, "token_used", amount) is None:
                raise ServiceError(ErrorKind.USER_NOT_FOUND)
            return None
        result = self.store.consume_quota(identity.user_id, amount)
        if result is None:
            self._load(identity.user_id)
            raise ServiceError(ErrorKind.QUOTA_EXCEEDED)
        token_quota, token_used = result
        return max(token_quota - token_used, 0)

    async def usage(self, user_id: str) -> UsageStats:
        token_quota, token_used = self._load(user_id)
        return UsageStats(user_id=user_id, token_quota=token_quota, token_used=token_used)

    async def adjust_quota(self, user_id: str, token_quota: int) -> UsageStats:
        if token_quota < 0:
            raise ServiceError(ErrorKind.INVALID_PARAM, "token quota must be non-negative")
        user = self.store.update_user_fields(user_id, {"token_quota": token_quota})
        if user is None:
            raise ServiceError(ErrorKind.USER_NOT_FOUND)
        logger.info("quota_adjusted", user_id=user_id, token_quota=token_quota)
        return UsageStats(user_id=user.id, token_quota=user.token_quota, token_used=user.token_used)
