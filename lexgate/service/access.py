from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from redis.exceptions import RedisError

from lexgate.logging import get_logger
from lexgate.service.errors import ErrorKind, ServiceError
from lexgate.service.tokens import AccessClaims, TokenCodec
from lexgate.storage import keys

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Request-scoped identity populated by a successful authentication."""

    user_id: str
    role: str
    claims: AccessClaims


def extract_bearer(header: Optional[str]) -> str:
    if not header:
        raise ServiceError(ErrorKind.UNAUTHORIZED, "missing authorization header")
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise ServiceError(ErrorKind.UNAUTHORIZED, "invalid authorization format")
    return token


class AccessGate:
    """Per-request token validation, optional auth and role checks."""

    def __init__(self, tokens: TokenCodec, cache) -> None:
        self.tokens = tokens
        self.cache = cache

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        try:
            claims = self.tokens.parse_token(token)
        except ServiceError as exc:
            if exc.kind == ErrorKind.TOKEN_EXPIRED:
                raise ServiceError(ErrorKind.UNAUTHORIZED, "token expired") from exc
            raise ServiceError(ErrorKind.UNAUTHORIZED, "invalid token") from exc
        if await self.cache.exists(keys.blacklist_key(claims.jti)):
            logger.info("revoked_token_presented", user_id=claims.user_id, jti=claims.jti)
            raise ServiceError(ErrorKind.TOKEN_REVOKED)
        return AuthContext(user_id=claims.user_id, role=claims.role, claims=claims)

    async def optional(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Like :meth:`authenticate` but any failure means anonymous."""
        if not authorization:
            return None
        try:
            return await self.authenticate(authorization)
        except (ServiceError, RedisError) as exc:
            logger.debug("optional_auth_ignored", error=str(exc))
            return None

    @staticmethod
    def require_role(identity: Optional[AuthContext], allowed: Iterable[str]) -> AuthContext:
        if identity is None:
            raise ServiceError(ErrorKind.UNAUTHORIZED)
        if identity.role not in set(allowed):
            logger.info("role_forbidden", user_id=identity.user_id, role=identity.role)
            raise ServiceError(ErrorKind.FORBIDDEN, "insufficient permissions")
        return identity
