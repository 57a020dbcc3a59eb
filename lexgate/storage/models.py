from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BANNED = "banned"


# Roles that bypass the token quota and may manage other accounts
ADMIN_ROLES = frozenset({Role.ADMIN.value, Role.SUPER_ADMIN.value})


@dataclass
class Credential:
    id: str
    email: str
    password_hash: str
    name: str
    phone: Optional[str] = None
    avatar: Optional[str] = None
    role: str = Role.USER.value
    status: str = UserStatus.ACTIVE.value
    token_quota: int = 100000
    token_used: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    @property
    def token_remaining(self) -> int:
        return max(self.token_quota - self.token_used, 0)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = Role.USER.value,
        token_quota: int = 100000,
    ) -> "Credential":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
            phone=phone,
            role=role,
            token_quota=token_quota,
            created_at=now,
            updated_at=now,
        )


@dataclass
class RefreshRecord:
    user_id: str
    created_at: datetime

    def to_json(self) -> dict:
        return {"userId": self.user_id, "createdAt": self.created_at.isoformat()}

    @classmethod
    def from_json(cls, data: dict) -> "RefreshRecord":
        return cls(
            user_id=str(data["userId"]),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


@dataclass
class GuestSession:
    session_id: str
    chat_count: int = 0

    def to_json(self) -> dict:
        return {"sessionId": self.session_id, "chatCount": self.chat_count}

    @classmethod
    def from_json(cls, data: dict) -> "GuestSession":
        return cls(
            session_id=str(data.get("sessionId") or ""),
            chat_count=int(data.get("chatCount") or 0),
        )
