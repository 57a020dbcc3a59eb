from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional

from lexgate.logging import get_logger
from lexgate.storage.errors import ConstraintViolation
from lexgate.storage.models import Credential, Role, utcnow

# Columns callers may change through update_user_fields / increment_user_field
UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "phone",
        "password_hash",
        "name",
        "avatar",
        "role",
        "status",
        "token_quota",
        "token_used",
        "last_login_at",
    }
)
INCREMENTABLE_FIELDS = frozenset({"token_used", "token_quota"})


class MemoryStore:
    """In-memory credential repository for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Credential] = {}
        # RLock for all data operations; nested acquisition is allowed
        self._data_lock = threading.RLock()

    def _check_unique(
        self, *, email: Optional[str], phone: Optional[str], exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and existing.phone == phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})

    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = Role.USER.value,
        token_quota: int = 100000,
    ) -> Credential:
        with self._data_lock:
            self._check_unique(email=email, phone=phone)
            user = Credential.new(
                email,
                password_hash,
                name,
                phone=phone,
                role=role,
                token_quota=token_quota,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_phone(self, phone: str) -> Optional[Credential]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.phone == phone), None)
            return replace(user) if user else None

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return any(u.email == email for u in self.users.values())

    def list_users(self, limit: int = 100) -> List[Credential]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in results[:limit]]

    def update_user_fields(self, user_id: str, fields: Dict[str, Any]) -> Optional[Credential]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_unique(
                email=fields.get("email"), phone=fields.get("phone"), exclude_id=user_id
            )
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return replace(user)

    def increment_user_field(self, user_id: str, field: str, amount: int) -> Optional[int]:
        if field not in INCREMENTABLE_FIELDS:
            raise ValueError(f"cannot increment field: {field}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            value = getattr(user, field) + amount
            setattr(user, field, value)
            user.updated_at = utcnow()
            return value

    def get_quota(self, user_id: str) -> Optional[tuple[int, int]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return (user.token_quota, user.token_used)

    def consume_quota(self, user_id: str, amount: int) -> Optional[tuple[int, int]]:
        """Add ``amount`` to ``token_used`` only while usage is below quota.

        Returns the new ``(quota, used)`` or ``None`` when the user is unknown
        or the quota was already exhausted.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.token_used >= user.token_quota:
                return None
            user.token_used += amount
            user.updated_at = utcnow()
            return (user.token_quota, user.token_used)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None
