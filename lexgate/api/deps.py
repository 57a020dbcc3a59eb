from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Header, Request, Response

from lexgate.logging import get_logger
from lexgate.service.access import AuthContext
from lexgate.service.runtime import get_runtime
from lexgate.storage.models import ADMIN_ROLES

logger = get_logger(__name__)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Require a valid, unrevoked bearer token."""
    runtime = get_runtime()
    return await runtime.access.authenticate(authorization)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return await runtime.access.optional(authorization)


def require_role(*roles: str) -> Callable:
    """Build a dependency that admits only the given roles."""
    allowed = frozenset(roles)

    async def _require(identity: AuthContext = Depends(get_user)) -> AuthContext:
        runtime = get_runtime()
        return runtime.access.require_role(identity, allowed)

    return _require


get_admin_user = require_role(*ADMIN_ROLES)


async def guest_gate(request: Request, response: Response) -> str:
    """Admit an anonymous caller under the guest chat limit.

    Sets the guest cookie when a new id had to be minted.
    """
    runtime = get_runtime()
    settings = runtime.settings
    guest = runtime.guest.resolve_guest_id(request.cookies.get(settings.guest_cookie_name))
    await runtime.guest.check(guest.guest_id)
    if guest.issued:
        response.set_cookie(
            settings.guest_cookie_name,
            guest.guest_id,
            max_age=settings.guest_session_ttl_hours * 3600,
            path="/",
            httponly=True,
            secure=settings.guest_cookie_secure,
            samesite="lax",
        )
    return guest.guest_id


async def quota_gate(identity: AuthContext = Depends(get_user)) -> Optional[int]:
    runtime = get_runtime()
    return await runtime.quota.check(identity)


@dataclass(frozen=True)
class ChatAccess:
    """What a chat handler may rely on once admission succeeded.

    Exactly one of ``identity`` and ``guest_id`` is set. ``remaining`` is
    the token budget left, or None when no budget applies.
    """

    identity: Optional[AuthContext]
    guest_id: Optional[str]
    remaining: Optional[int]


async def chat_gate(
    request: Request,
    response: Response,
    identity: Optional[AuthContext] = Depends(get_optional_user),
) -> ChatAccess:
    """Optional auth, then the guest limit for anonymous callers, then the quota."""
    if identity is None:
        guest_id = await guest_gate(request, response)
        return ChatAccess(identity=None, guest_id=guest_id, remaining=None)
    runtime = get_runtime()
    remaining = await runtime.quota.check(identity)
    return ChatAccess(identity=identity, guest_id=None, remaining=remaining)
