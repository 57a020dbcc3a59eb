from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Optional

from lexgate.logging import get_logger
from lexgate.service.errors import ErrorKind, ServiceError
from lexgate.storage import keys
from lexgate.storage.models import GuestSession

logger = get_logger(__name__)

GUEST_LIMIT_MESSAGE = "guest chat limit reached, please sign in to continue"


@dataclass(frozen=True)
class GuestIdentity:
    guest_id: str
    issued: bool


class GuestThrottle:
    """Chat-count limit for anonymous callers identified by a cookie.

    The cookie only names a counter; it is not a trust boundary.
    """

    def __init__(self, cache, *, max_chats: int = 5, session_ttl_seconds: int = 24 * 3600) -> None:
        self.cache = cache
        self.max_chats = max_chats
        self.session_ttl_seconds = session_ttl_seconds

    @staticmethod
    def resolve_guest_id(cookie_value: Optional[str]) -> GuestIdentity:
        """Reuse a well-formed cookie id, otherwise mint a new one."""
        if cookie_value:
            try:
                return GuestIdentity(guest_id=str(uuid.UUID(cookie_value)), issued=False)
            except ValueError:
                logger.info("guest_cookie_malformed")
        return GuestIdentity(guest_id=str(uuid.uuid4()), issued=True)

    async def load(self, guest_id: str) -> GuestSession:
        raw = await self.cache.get(keys.guest_session_key(guest_id))
        if raw is None:
            return GuestSession(session_id="")
        try:
            return GuestSession.from_json(json.loads(raw))
        except (ValueError, TypeError, AttributeError):
            logger.warning("guest_session_corrupt", guest_id=guest_id)
            return GuestSession(session_id="")

    async def check(self, guest_id: str) -> GuestSession:
        """Gate a request; an unknown guest is a fresh, permitted guest."""
        session = await self.load(guest_id)
        if session.chat_count >= self.max_chats:
            logger.info("guest_limit_reached", guest_id=guest_id, chat_count=session.chat_count)
            raise ServiceError(ErrorKind.FORBIDDEN, GUEST_LIMIT_MESSAGE)
        return session

    async def record_chat(self, guest_id: str, session_id: Optional[str] = None) -> int:
        """Count one served chat. Returns the new count.

        ``session_id`` names the chat session that was served; it becomes the
        guest's current session. Without one, the first recorded chat mints an
        id that later calls keep.

        A single bounded increment in the store, so concurrent chats from one
        guest can neither under-count nor overshoot the limit.
        """
        accepted, count = await self.cache.incr_json_field_bounded(
            keys.guest_session_key(guest_id),
            "chatCount",
            self.max_chats,
            self.session_ttl_seconds,
            GuestSession(session_id=str(uuid.uuid4())).to_json(),
            updates={"sessionId": session_id} if session_id else None,
        )
        if not accepted:
            raise ServiceError(ErrorKind.FORBIDDEN, GUEST_LIMIT_MESSAGE)
        return count

    def remaining(self, session: GuestSession) -> int:
        return max(self.max_chats - session.chat_count, 0)
